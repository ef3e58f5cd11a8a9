"""Error taxonomy shared by the gateway, courier and fulfillment services.

``kind`` is what callers branch on: configuration errors must not be
retried, transient ones may be.
"""

from typing import Optional


class StorefrontError(Exception):
    kind = "error"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ConfigurationError(StorefrontError):
    """Missing or mismatched credentials, client name or pickup warehouse."""

    kind = "configuration"


class TransientRemoteError(StorefrontError):
    """Timeout, connection failure or 5xx from a remote service."""

    kind = "transient"


class RemoteRequestError(StorefrontError):
    """The remote service rejected the request (non-auth 4xx)."""

    kind = "rejected"


class NotFoundError(StorefrontError):
    kind = "not_found"


class InsufficientStockError(StorefrontError):
    kind = "out_of_stock"

    def __init__(self, product_id: str, requested: int) -> None:
        super().__init__(f"insufficient stock for product {product_id}")
        self.product_id = product_id
        self.requested = requested


class ConflictError(StorefrontError):
    """The record moved to another state while this unit of work ran."""

    kind = "conflict"

import re


_PIN_RE = re.compile(r"^[1-9][0-9]{5}$")
_PHONE_RE = re.compile(r"^\+?[0-9]{10,13}$")


def ensure_positive_int(value, field: str, *, allow_zero: bool = False) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer")
    if v < 0 or (v == 0 and not allow_zero):
        raise ValueError(f"{field} must be {'>= 0' if allow_zero else '> 0'}")
    return v


def validate_pin(value: str) -> str:
    v = (value or "").strip()
    if not _PIN_RE.match(v):
        raise ValueError("pin must be a 6 digit postal code")
    return v


def validate_phone(value: str) -> str:
    v = re.sub(r"[\s-]", "", value or "")
    if not _PHONE_RE.match(v):
        raise ValueError("phone must contain 10 to 13 digits")
    return v

"""Web shell configuration for the storefront Flask app."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storefront.config import AppConfig, load_env
from storefront.services.errors import ConfigurationError
from storefront.services.logging import log_event


@dataclass
class StorefrontConfig:
    """Admin login, data directory and the domain settings loaded from it."""

    secret_key: str
    admin_username: str
    admin_password: str
    project_root: Path
    data_dir: Path
    app: AppConfig

    @property
    def settings_file(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def admin_credentials_file(self) -> Path:
        return self.data_dir / "admin.json"

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "StorefrontConfig":
        """Build from environment variables and ensure the data directory exists."""

        project_root = Path(__file__).resolve().parent
        data_dir = Path(data_dir or os.environ.get("STOREFRONT_DATA_DIR") or project_root / "data")
        data_dir.mkdir(parents=True, exist_ok=True)

        app_config = load_env(data_dir / "settings.json")
        config = cls(
            secret_key=os.environ.get("STOREFRONT_SECRET_KEY", app_config.secret_key),
            admin_username=os.environ.get("STOREFRONT_ADMIN_USER", "admin"),
            admin_password=os.environ.get("STOREFRONT_ADMIN_PASS", ""),
            project_root=project_root,
            data_dir=data_dir,
            app=app_config,
        )

        # admin.json overrides the environment when present
        if config.admin_credentials_file.exists():
            try:
                admin_data = json.loads(config.admin_credentials_file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"{config.admin_credentials_file} is not valid JSON: {exc}") from exc
            if isinstance(admin_data, dict):
                config.admin_username = admin_data.get("username", config.admin_username)
                config.admin_password = admin_data.get("password", config.admin_password)
                log_event("info", "config.admin_credentials_loaded", path=str(config.admin_credentials_file))

        return config

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("CSR_DB_PATH", "csr.db")
    poll_interval_s: int = _env_int("CSR_POLL_INTERVAL_S", 10)
    update_status: bool = _env_bool("CSR_UPDATE_STATUS", True)

    # Child resource backend: sqlite|kubernetes
    gateway_backend: str = os.getenv("CSR_GATEWAY_BACKEND", "sqlite")
    enable_resync: bool = _env_bool("CSR_ENABLE_RESYNC", True)

    # API basic auth
    api_user: str = os.getenv("CSR_API_USER", "admin")
    api_password: str | None = os.getenv("CSR_API_PASSWORD")


settings = Settings()

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
    db_path: str = os.getenv("REPROX_DB_PATH", "reprox.db")
    event_retention: int = _env_int("REPROX_EVENT_RETENTION", 10000)
    poll_interval_s: int = _env_int("REPROX_POLL_INTERVAL_S", 30)
    host_label: str = os.getenv("REPROX_HOST_LABEL", "reprox.host")
    duplicate_policy: str = os.getenv("REPROX_DUPLICATE_POLICY", "last")  # last|first
    watch_events: bool = _env_bool("REPROX_WATCH_EVENTS", False)
    log_level: str = os.getenv("REPROX_LOG_LEVEL", "INFO")

    # nginx
    nginx_bin: str = os.getenv("REPROX_NGINX_BIN", "nginx")
    nginx_config: str = os.getenv("REPROX_NGINX_CONFIG", "/etc/nginx/conf.d/apps.conf")

    # Certificates
    cert_dir: str = os.getenv("REPROX_CERT_DIR", "/etc/letsencrypt/live")
    self_signed_dir: str = os.getenv("REPROX_SELF_SIGNED_DIR", "/etc/reprox/self-signed")
    certbot_bin: str = os.getenv("REPROX_CERTBOT_BIN", "certbot")
    certbot_email: str | None = os.getenv("CERTBOT_EMAIL")
    openssl_bin: str = os.getenv("REPROX_OPENSSL_BIN", "openssl")
    self_signed_days: int = _env_int("REPROX_SELF_SIGNED_DAYS", 1)
    renew_interval_s: int = _env_int("REPROX_RENEW_INTERVAL_S", 24 * 60 * 60)
    renew_initial_delay_s: int = _env_int("REPROX_RENEW_INITIAL_DELAY_S", 5)
    renew_retry_s: int = _env_int("REPROX_RENEW_RETRY_S", 60 * 60)

    # 0 disables the timeout.
    command_timeout_s: int = _env_int("REPROX_COMMAND_TIMEOUT_S", 600)

    # Status API (port 0 disables it)
    api_host: str = os.getenv("REPROX_API_HOST", "127.0.0.1")
    api_port: int = _env_int("REPROX_API_PORT", 0)


settings = Settings()

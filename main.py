import os
import logging
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from scheduled_mail_service.core import ScheduledMailCore
from scheduled_mail_service.api import create_app
from scheduled_mail_service.sender import SmtpSender

# Configure logging level from environment
log_level = os.getenv("GMS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with GMS_):
      GMS_CONFIG - Path to config.ini file (default: config.ini)
      GMS_LOG_LEVEL - Logging level (default: INFO)
      GMS_DB_PATH - Database path (default: /data/scheduled_mail.db)
      GMS_HOST - Server host (default: 0.0.0.0)
      GMS_PORT - Server port (default: 8000)
      GMS_API_TOKEN - API authentication token
      GMS_SMTP_HOST, GMS_SMTP_PORT, GMS_SMTP_USER, GMS_SMTP_PASSWORD,
      GMS_SMTP_USE_TLS, GMS_SMTP_SENDER - Outbound SMTP account
      GMS_TICK_INTERVAL - Seconds between processing passes (default: 60)
      GMS_TEST_MODE - Only run passes on explicit "run now" (default: False)
      GMS_MAX_CONCURRENT_GROUPS - Groups dispatched in parallel (default: 4)
      GMS_SEND_TIMEOUT - Seconds before a send is abandoned (default: 30)
      GMS_LOG_DELIVERY_ACTIVITY - Log delivery activity (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [smtp] host, port, user, password, use_tls, sender
      [scheduler] tick_interval_seconds, test_mode, max_concurrent_groups, send_timeout_seconds
      [logging] delivery_activity
    """
    config_path = Path(os.getenv("GMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("GMS_DB_PATH", "/data/scheduled_mail.db")),
        "http_host": get("server", "host", os.getenv("GMS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("GMS_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("GMS_API_TOKEN")),
        "smtp_host": get("smtp", "host", os.getenv("GMS_SMTP_HOST", "localhost")),
        "smtp_port": get_int("smtp", "port", os.getenv("GMS_SMTP_PORT"), default=25),
        "smtp_user": get("smtp", "user", os.getenv("GMS_SMTP_USER")),
        "smtp_password": get("smtp", "password", os.getenv("GMS_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", os.getenv("GMS_SMTP_USE_TLS"), default=None),
        "smtp_sender": get("smtp", "sender", os.getenv("GMS_SMTP_SENDER", "noreply@localhost")),
        "tick_interval": get_float("scheduler", "tick_interval_seconds", os.getenv("GMS_TICK_INTERVAL"), default=60.0),
        "test_mode": get_bool("scheduler", "test_mode", os.getenv("GMS_TEST_MODE"), False),
        "max_concurrent_groups": get_int(
            "scheduler",
            "max_concurrent_groups",
            os.getenv("GMS_MAX_CONCURRENT_GROUPS"),
            default=4,
        ),
        "send_timeout": get_float("scheduler", "send_timeout_seconds", os.getenv("GMS_SEND_TIMEOUT"), default=30.0),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("GMS_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def build_service(settings: dict[str, object]) -> ScheduledMailCore:
    """Create the scheduler and its SMTP sender from loaded settings."""
    sender = SmtpSender(
        host=str(settings["smtp_host"]),
        port=int(settings["smtp_port"]),
        user=settings.get("smtp_user"),
        password=settings.get("smtp_password"),
        use_tls=settings.get("smtp_use_tls"),
        from_addr=str(settings["smtp_sender"]),
        timeout=float(settings["send_timeout"]),
    )
    return ScheduledMailCore(
        sender=sender,
        db_path=settings["db_path"],
        tick_interval=float(settings["tick_interval"]),
        test_mode=bool(settings.get("test_mode")),
        max_concurrent_groups=int(settings["max_concurrent_groups"]),
        send_timeout=float(settings["send_timeout"]),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


if __name__ == "__main__":
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))

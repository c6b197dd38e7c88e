import logging
import os
import sys
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel


class ConfigurationError(RuntimeError):
    pass


def _required(key: str, missing: List[str]) -> str:
    value = os.getenv(key)
    if not value:
        missing.append(key)
        return ""
    return value


class Settings(BaseModel):
    database_url: str
    database_name: str
    openai_api_key: str
    openai_model: str = "gpt-4.1-mini"
    stripe_secret_key: str
    stripe_publishable_key: str
    # Without a webhook secret every inbound callback is rejected
    stripe_webhook_secret: Optional[str] = None
    plan_price_ids: Dict[str, str] = {}
    app_url: str = "http://localhost:9002"
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 15 * 60
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        missing: List[str] = []
        values = {
            "database_url": _required("DATABASE_URL", missing),
            "database_name": _required("DATABASE_NAME", missing),
            "openai_api_key": _required("OPENAI_API_KEY", missing),
            "stripe_secret_key": _required("STRIPE_SECRET_KEY", missing),
            "stripe_publishable_key": _required("STRIPE_PUBLISHABLE_KEY", missing),
            "app_url": _required("APP_URL", missing).rstrip("/"),
        }
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

        price_ids = {}
        for plan in ("starter", "professional", "enterprise"):
            price_id = os.getenv(f"STRIPE_{plan.upper()}_PRICE_ID")
            if price_id:
                price_ids[plan] = price_id

        return cls(
            **values,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4.1-mini"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            plan_price_ids=price_ids,
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60))),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Route structlog and stdlib logging (uvicorn, pymongo) through one renderer."""
    renderer = structlog.dev.ConsoleRenderer() if fmt == "console" else structlog.processors.JSONRenderer()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level, logging.INFO))
    logging.getLogger("pymongo").setLevel(logging.WARNING)

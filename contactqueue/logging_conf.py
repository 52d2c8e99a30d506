"""Logging configuration with Betterstack support."""
import logging
import sys
from logging.handlers import RotatingFileHandler

from logtail import LogtailHandler

from .settings import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: Settings) -> logging.Logger:
    root_logger = logging.getLogger()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root_logger.setLevel(level)
    root_logger.handlers = []

    formatter = logging.Formatter(LOG_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler
    if settings.log_file:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(settings.log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # BetterStack handler
    if settings.betterstack_source_token:
        try:
            handler_kwargs = {"source_token": settings.betterstack_source_token}
            if settings.betterstack_ingest_host:
                handler_kwargs["host"] = settings.betterstack_ingest_host
            betterstack_handler = LogtailHandler(**handler_kwargs)
            betterstack_handler.setLevel(logging.DEBUG)
            betterstack_handler.setFormatter(formatter)
            root_logger.addHandler(betterstack_handler)
            host_info = settings.betterstack_ingest_host or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return root_logger

"""Structured logging initialisation utilities."""
from __future__ import annotations

import logging
import logging.config
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml

DEFAULT_LOGGING_CONFIG = Path("config/logging.yaml")


def configure_logging(config_path: Optional[Path] = None, *, verbose: bool = False, json_output: bool = False) -> None:
    """Configure stdlib and structlog logging, using the YAML definition when present."""
    level = logging.DEBUG if verbose else logging.INFO
    path = config_path or DEFAULT_LOGGING_CONFIG
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            config: Dict[str, Any] = yaml.safe_load(handle)
        logging.config.dictConfig(config)
        logging.getLogger().setLevel(level)
    else:
        logging.basicConfig(level=level, format="%(message)s")

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

"""Logging setup for the session controller and its CLI."""
from __future__ import annotations

import logging
from logging import Logger
from typing import Iterable, Optional


def configure_logging(
    level: int | str = logging.INFO,
    *,
    name: str = "airsession",
    propagate: bool = False,
    extra_loggers: Optional[Iterable[str]] = None,
) -> Logger:
    """Attach a single formatted stream handler to ``name`` and return it.

    Child loggers created with ``logging.getLogger(__name__)`` inside the
    package inherit the handler. Calling this twice does not duplicate it.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )

    def _attach(target: Logger) -> None:
        if not any(isinstance(existing, logging.StreamHandler) for existing in target.handlers):
            target.addHandler(handler)
        target.setLevel(level)
        target.propagate = propagate

    logger = logging.getLogger(name)
    _attach(logger)

    if extra_loggers:
        for logger_name in extra_loggers:
            _attach(logging.getLogger(logger_name))

    return logger

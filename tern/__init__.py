"""Tern: multi-turn conversation engine for generative-language backends."""

from __future__ import annotations

import logging

from tern.config import Settings

__version__ = "0.3.0"


def configure_logging(settings: Settings | None = None) -> None:
    """Apply ``settings.log_level`` to the root logger."""
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

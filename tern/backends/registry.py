"""Backend id -> adapter factory."""

from __future__ import annotations

import logging
from typing import Callable

import httpx

from tern.backends.base import ContentGenerator
from tern.backends.native import NativeBackend
from tern.backends.openai_compat import OpenAICompatibleBackend
from tern.config import Settings
from tern.errors import ConfigurationError
from tern.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Settings, TelemetrySink | None, httpx.AsyncClient | None], ContentGenerator]

_REGISTRY: dict[str, BackendFactory] = {
    NativeBackend.backend_id: NativeBackend,
    OpenAICompatibleBackend.backend_id: OpenAICompatibleBackend,
}


def register_backend(backend_id: str, factory: BackendFactory) -> None:
    if backend_id in _REGISTRY:
        logger.info("Replacing backend factory for '%s'", backend_id)
    _REGISTRY[backend_id] = factory


def available_backends() -> list[str]:
    return sorted(_REGISTRY)


def create_backend(
    settings: Settings,
    telemetry: TelemetrySink | None = None,
    http: httpx.AsyncClient | None = None,
    backend_id: str | None = None,
) -> ContentGenerator:
    backend_id = backend_id or settings.backend
    factory = _REGISTRY.get(backend_id)
    if factory is None:
        raise ConfigurationError(
            f"Unknown backend '{backend_id}'",
            {"available": available_backends()},
        )
    return factory(settings, telemetry, http)

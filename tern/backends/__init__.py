"""Backend adapters: one per wire protocol, all behind ``ContentGenerator``."""

from tern.backends.base import (
    BaseBackend,
    ContentGenerator,
    FinishReason,
    GenerationRequest,
    GenerationResponse,
    SamplingParams,
    ToolDeclaration,
)
from tern.backends.registry import available_backends, create_backend, register_backend

__all__ = [
    "BaseBackend",
    "ContentGenerator",
    "FinishReason",
    "GenerationRequest",
    "GenerationResponse",
    "SamplingParams",
    "ToolDeclaration",
    "available_backends",
    "create_backend",
    "register_backend",
]

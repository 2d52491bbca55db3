"""Prediction backends: configuration, transport, and adapters."""

from oracle.engine.backends.base import (
    LLMBackendAdapter,
    PredictionBackend,
    build_adapters,
    build_prompt,
    parse_pick_payload,
)
from oracle.engine.backends.config import BackendConfig, BackendSet
from oracle.engine.backends.transport import ChatTransport, Transport, TransportError

__all__ = [
    "BackendConfig",
    "BackendSet",
    "ChatTransport",
    "LLMBackendAdapter",
    "PredictionBackend",
    "Transport",
    "TransportError",
    "build_adapters",
    "build_prompt",
    "parse_pick_payload",
]

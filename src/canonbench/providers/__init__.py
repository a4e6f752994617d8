# Copyright (c) Syntropy Systems
"""Provider adapters for canonbench."""

from .base import (
    ProviderAdapter,
    ProviderConfig,
    ProviderRegistry,
    ProviderResponse,
    ProviderTarget,
    extract_text,
    normalize_empty_response,
    parse_json_response,
)
from .mock import MockProvider


def default_registry() -> ProviderRegistry:
    """Registry with the built-in adapters."""
    return ProviderRegistry({"mock": MockProvider()})


__all__ = [
    "MockProvider",
    "ProviderAdapter",
    "ProviderConfig",
    "ProviderRegistry",
    "ProviderResponse",
    "ProviderTarget",
    "default_registry",
    "extract_text",
    "normalize_empty_response",
    "parse_json_response",
]

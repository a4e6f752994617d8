# Copyright (c) Syntropy Systems
"""Error types for canonbench."""

from __future__ import annotations


class CanonbenchError(RuntimeError):
    """Base class for canonbench errors."""


class ConfigurationError(CanonbenchError):
    """Run setup cannot proceed.

    Raised for a missing or inactive transform profile, an unknown or inactive
    model, an unregistered provider, or a scope that resolves to no targets.
    Raised before any run state is written.
    """


class ProviderError(CanonbenchError):
    """A provider call failed (network, auth, timeout, empty response)."""


class ParseError(CanonbenchError):
    """Provider output could not be turned into evaluable text."""


class AggregationError(CanonbenchError):
    """A rollup stage failed. Never changes a run's terminal status."""


class AlignmentWarning(UserWarning):
    """Parsed verse numbers disagree with the canonical verse list."""

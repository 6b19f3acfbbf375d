"""Error taxonomy for the aggregation layer.

ProviderUnavailable (and its ProviderTimeout subclass) marks one backend as failed
for one entity type; the Aggregator turns it into a partial error. NormalizationError
is raised per record and only ever counted. Access denial is deliberately not an
exception: the Role Filter returns an empty set.
"""

from __future__ import annotations


class SalesOpsError(Exception):
    """Base class for every error raised by this package."""


class ProviderUnavailable(SalesOpsError):
    """A Record Provider failed to answer for an entity type."""

    def __init__(self, provider: str, entity_type: str, reason: str) -> None:
        self.provider = provider
        self.entity_type = entity_type
        self.reason = reason
        super().__init__(f"{provider} unavailable for {entity_type}: {reason}")


class ProviderTimeout(ProviderUnavailable):
    """A Record Provider call exceeded the configured bound."""

    def __init__(self, provider: str, entity_type: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(provider, entity_type, f"timed out after {timeout_seconds:g}s")


class ReadOnlyProviderError(SalesOpsError):
    """A write was routed to a provider that only supports reads."""


class NormalizationError(SalesOpsError):
    """A raw record cannot be mapped onto its canonical shape."""

    def __init__(self, entity_type: str, reason: str) -> None:
        self.entity_type = entity_type
        self.reason = reason
        super().__init__(f"cannot normalize {entity_type} record: {reason}")


class UnknownEntityTypeError(SalesOpsError):
    """An entity type name outside the supported set was requested."""


class NotFoundError(SalesOpsError):
    """The addressed record does not exist."""


class InvalidTransitionError(SalesOpsError):
    """A status change that only allows forward moves was attempted backwards."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")


class RecipientValidationError(SalesOpsError):
    """A notification addresses user ids that do not exist."""

    def __init__(self, unknown: list[str]) -> None:
        self.unknown = unknown
        super().__init__(f"Unknown notification recipients: {', '.join(unknown)}")


class ConflictError(SalesOpsError):
    """A record with the same natural key already exists."""

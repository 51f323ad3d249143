"""Error taxonomy for the metering engine.

Every condition a caller can recover from is a :class:`MeteringError`
subclass carrying a stable ``code`` string, so transports (CLI, workers,
future HTTP adapters) can map them without matching on message text.

Terminal-transition races (``stop`` versus ``auto_expire``) are *not*
errors: they resolve to the already-frozen session.
"""

from __future__ import annotations


class MeteringError(Exception):
    """Base class for all recoverable metering conditions."""

    code: str = "metering_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthorizationDenied(MeteringError):
    """The tenant is not authorized to meter sessions."""

    code = "authorization_denied"


class QuotaExceeded(MeteringError):
    """A concurrent-session or duration cap was hit."""

    code = "quota_exceeded"


class ResourceBusy(QuotaExceeded):
    """The resource already carries a running or paused session."""

    code = "resource_busy"


class InvalidDuration(MeteringError):
    """A countdown duration is non-positive or above the tenant cap."""

    code = "invalid_duration"


class InvalidTransition(MeteringError):
    """The requested lifecycle transition is not allowed from the current state."""

    code = "invalid_transition"

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(MeteringError):
    """An unknown session, tenant policy, or tariff resource was referenced."""

    code = "not_found"


class TransientStoreError(MeteringError):
    """A persistence round-trip failed; the prior committed state is intact.

    Callers may retry the same request.
    """

    code = "transient_store_error"


class ConcurrentModification(TransientStoreError):
    """Optimistic version checks kept losing to concurrent writers."""

    code = "concurrent_modification"

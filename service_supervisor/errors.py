from __future__ import annotations


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class ProbeFailure(SupervisorError):
    """A probe could not confirm its check. Turned into a failed ProbeResult."""


class RemediationFailure(SupervisorError):
    """The restart action itself errored (non-zero exit, timeout, missing binary)."""


class StatePersistenceFailure(SupervisorError):
    """The state record could not be read or written. Fatal for the tick."""


class DiagnosticsFailure(SupervisorError):
    pass


class NotificationFailure(SupervisorError):
    pass


class SupervisorBusy(SupervisorError):
    """Another tick holds the state lock."""

from __future__ import annotations


class RefundMonitorError(RuntimeError):
    """Base class for errors raised by the refund monitor."""


class CaseNotFoundError(RefundMonitorError):
    pass


class CheckNotFoundError(RefundMonitorError):
    pass


class PreconditionError(RefundMonitorError):
    """
    A case is missing data the portal needs (identifier, refund amount).

    Raised before any browser is launched; the orchestrator records it as an `error` check.
    """


class AutomationError(RefundMonitorError):
    """Selector, navigation or page-structure failure while driving a portal."""


class PreSubmitGateError(AutomationError):
    """
    Raised when a form field read back from the DOM does not match what we typed.
    The form is never submitted in that case.
    """


class AutomationTimeout(AutomationError):
    """The check exceeded its wall-clock bound."""


class EngineUnavailableError(AutomationError):
    pass


class StorageError(RefundMonitorError):
    pass


class VisionError(RefundMonitorError):
    pass

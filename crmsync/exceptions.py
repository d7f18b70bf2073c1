"""
Error taxonomy for the webhook pipeline

Terminal errors describe an event that can never be processed; the
processor reports them and completes the job. Everything else propagates
to the job queue and is retried.
"""

from typing import Any, Dict, Optional


class CRMSyncError(Exception):
    """Base error"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class TerminalWebhookError(CRMSyncError):
    """Retrying cannot fix this event"""

    log_level = "warning"


class OwnerResolutionError(TerminalWebhookError):
    """No user matches the subdomain / project id of the event"""


class EntityIdMissingError(TerminalWebhookError):
    """Event carries no lead/deal identifier"""


class PayloadParseError(TerminalWebhookError):
    """Embedded payload could not be decoded"""

    log_level = "error"


class EnrichmentError(CRMSyncError):
    """Upstream entity fetch failed"""


class RuleEvaluationError(CRMSyncError):
    """Failure while processing a single rule"""


class DispatchError(CRMSyncError):
    """CRM sync adapter call failed"""


class QueueFullError(CRMSyncError):
    """Topic backlog limit reached"""


class AmoCRMError(CRMSyncError):
    """AmoCRM API error"""

    def __init__(self, message: str, status_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status_code = status_code


class LPTrackerError(CRMSyncError):
    """LPTracker API error"""

    def __init__(self, message: str, status_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status_code = status_code

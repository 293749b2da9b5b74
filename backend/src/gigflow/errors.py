"""
Typed errors raised by the engagement engines.

Handlers convert every EngagementError into an API Gateway response using
its status_code and to_dict(); anything else is an unexpected fault.
"""
from typing import Any, Dict, Optional


class EngagementError(Exception):
    """Base class for all engine errors."""

    code = 'ENGAGEMENT_ERROR'
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            'error': self.code,
            'message': self.message,
            'retryable': self.retryable,
        }
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(EngagementError):
    """Malformed input."""
    code = 'VALIDATION_ERROR'
    status_code = 400


class NotFound(EngagementError):
    code = 'NOT_FOUND'
    status_code = 404


class NotAuthorized(EngagementError):
    """Caller is not the party allowed to perform the action."""
    code = 'NOT_AUTHORIZED'
    status_code = 403


class InvalidTransition(EngagementError):
    """State precondition violated."""
    code = 'INVALID_TRANSITION'
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None,
                 event: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if current_status is not None:
            details['currentStatus'] = current_status
        if event is not None:
            details['event'] = event
        super().__init__(message, details)
        self.current_status = current_status
        self.event = event


class NoIterationsRemaining(EngagementError):
    """
    Iteration budget exhausted.

    This is user-correctable: the payload tells the caller how many
    iterations are left and whether the dispute path is open.
    """
    code = 'NO_ITERATIONS_REMAINING'
    status_code = 409

    def __init__(self, remaining: int, used: int, total: int, dispute_eligible: bool):
        details = {
            'remainingIterations': remaining,
            'usedIterations': used,
            'totalIterations': total,
            'disputeEligible': dispute_eligible,
        }
        if dispute_eligible:
            details['nextStep'] = 'raise_dispute'
        super().__init__('No iterations remaining for this engagement', details)
        self.remaining = remaining
        self.dispute_eligible = dispute_eligible


class PaymentNotVerified(EngagementError):
    code = 'PAYMENT_NOT_VERIFIED'
    status_code = 409


class PaymentVerificationFailed(EngagementError):
    """Gateway signature mismatch. The caller may start a new intent."""
    code = 'PAYMENT_VERIFICATION_FAILED'
    status_code = 400


class ConcurrentModification(EngagementError):
    """Optimistic-lock conflict. Re-read and retry."""
    code = 'CONCURRENT_MODIFICATION'
    status_code = 409
    retryable = True


class EntitlementRequired(EngagementError):
    """The company's subscription does not allow this action."""
    code = 'ENTITLEMENT_REQUIRED'
    status_code = 402


class ExternalCollaboratorError(EngagementError):
    """Storage, gateway or notification collaborator failed."""
    code = 'EXTERNAL_COLLABORATOR_ERROR'
    status_code = 502


class GatewayTimeout(ExternalCollaboratorError):
    code = 'GATEWAY_TIMEOUT'
    status_code = 504
    retryable = True

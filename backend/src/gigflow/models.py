"""
Data models and status constants for the engagement backend.
Based on the engagement lifecycle: Pending → Active → (Revision Requested ↔ Active) → Completed/Rejected/Exhausted → Disputed
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import ValidationError

# Namespace for deterministic engagement ids (one engagement per gig/candidate pair)
ENGAGEMENT_NAMESPACE = uuid.UUID('6f1c0f9e-6b1a-4c55-9a43-3a1f4c2d9e10')

MIN_ITERATIONS = 1
MAX_ITERATIONS = 20


class EngagementStatus:
    """Engagement lifecycle statuses."""
    PENDING = 'pending'
    ACCEPTED = 'accepted'  # legacy value, normalised to ACTIVE on read
    ACTIVE = 'active'
    REVISION_REQUESTED = 'revision_requested'
    COMPLETED = 'completed'
    REJECTED = 'rejected'
    EXHAUSTED = 'exhausted'
    DISPUTED = 'disputed'

    ALL = frozenset({
        PENDING, ACCEPTED, ACTIVE, REVISION_REQUESTED,
        COMPLETED, REJECTED, EXHAUSTED, DISPUTED,
    })
    WORKING = frozenset({ACTIVE, REVISION_REQUESTED})
    TERMINAL = frozenset({COMPLETED, REJECTED, EXHAUSTED, DISPUTED})


class EngagementEvent:
    """Events accepted by the engagement state machine."""
    ACCEPT = 'accept'
    SUBMIT = 'submit'
    APPROVE = 'approve'
    REQUEST_REVISION = 'request_revision'
    ITERATIONS_EXHAUSTED = 'iterations_exhausted'
    RAISE_DISPUTE = 'raise_dispute'
    REJECT = 'reject'


class PaymentStatus:
    """Escrow payment statuses."""
    INITIATED = 'initiated'
    PENDING_VERIFICATION = 'pending_verification'
    VERIFIED = 'verified'
    FAILED = 'failed'

    IN_FLIGHT = frozenset({INITIATED, PENDING_VERIFICATION})


class ReviewOutcome:
    """Submission review outcomes."""
    PENDING = 'pending'
    REVISION_REQUESTED = 'revision_requested'
    APPROVED = 'approved'
    REJECTED = 'rejected'

    FINAL = frozenset({REVISION_REQUESTED, APPROVED, REJECTED})


class AccessState:
    """Channel access states."""
    OPEN = 'open'
    READ_ONLY = 'read_only'


class CloseReason:
    """Why a channel became read-only."""
    AWAITING_ESCROW = 'awaiting_escrow'
    ENGAGEMENT_COMPLETED = 'engagement_completed'
    ENGAGEMENT_REJECTED = 'engagement_rejected'
    ITERATIONS_EXHAUSTED = 'iterations_exhausted'
    DISPUTE_RAISED = 'dispute_raised'
    APPROVED_AND_ARCHIVED = 'approved_and_archived'
    SCHEDULED_CLOSE = 'scheduled_close'


class NotificationKind:
    """Notification kinds published to the notifications queue."""
    ENGAGEMENT_CREATED = 'engagement_created'
    ENGAGEMENT_ACTIVATED = 'engagement_activated'
    ENGAGEMENT_REJECTED = 'engagement_rejected'
    SUBMISSION_RECEIVED = 'submission_received'
    REVISION_REQUESTED = 'revision_requested'
    SUBMISSION_APPROVED = 'submission_approved'
    SUBMISSION_REJECTED = 'submission_rejected'
    ITERATIONS_EXHAUSTED = 'iterations_exhausted'
    DISPUTE_RAISED = 'dispute_raised'
    PAYMENT_FAILED = 'payment_failed'
    CHANNEL_CLOSE_WARNING = 'channel_close_warning'
    CHANNEL_ARCHIVED = 'channel_archived'


def engagement_id_for(gig_id: str, candidate_id: str) -> str:
    """Deterministic engagement id for a (gig, candidate) pair."""
    return str(uuid.uuid5(ENGAGEMENT_NAMESPACE, f"{gig_id}:{candidate_id}"))


def new_engagement_item(
    gig_id: str,
    company_id: str,
    candidate_id: str,
    total_iterations: int,
    agreed_amount: Decimal,
    timestamp: str,
) -> Dict[str, Any]:
    return {
        'engagementId': engagement_id_for(gig_id, candidate_id),
        'gigId': gig_id,
        'companyId': company_id,
        'candidateId': candidate_id,
        'status': EngagementStatus.PENDING,
        'totalIterations': total_iterations,
        'usedIterations': 0,
        'remainingIterations': total_iterations,
        'agreedAmount': agreed_amount,
        'escrowPaymentId': None,
        'currentSubmissionId': None,
        'awaitingReview': False,
        'version': 1,
        'statusHistory': [
            {'status': EngagementStatus.PENDING, 'at': timestamp, 'reason': 'application_accepted'}
        ],
        'createdAt': timestamp,
        'updatedAt': timestamp,
    }


def new_payment_item(
    engagement_id: str,
    amount: Decimal,
    platform_fee: Decimal,
    currency: str,
    timestamp: str,
) -> Dict[str, Any]:
    return {
        'paymentId': str(uuid.uuid4()),
        'engagementId': engagement_id,
        'status': PaymentStatus.INITIATED,
        'amount': amount,
        'platformFee': platform_fee,
        'totalAmount': amount + platform_fee,
        'currency': currency,
        'gatewayOrderRef': None,
        'gatewayPaymentRef': None,
        'signature': None,
        'statusHistory': [
            {'status': PaymentStatus.INITIATED, 'at': timestamp, 'description': 'Escrow intent created'}
        ],
        'createdAt': timestamp,
        'updatedAt': timestamp,
    }


def new_submission_item(
    engagement: Dict[str, Any],
    iteration_number: int,
    files: List[Dict[str, Any]],
    description: str,
    timestamp: str,
) -> Dict[str, Any]:
    return {
        'submissionId': str(uuid.uuid4()),
        'engagementId': engagement['engagementId'],
        'candidateId': engagement['candidateId'],
        'iterationNumber': iteration_number,
        'reviewOutcome': ReviewOutcome.PENDING,
        'feedback': None,
        'description': description,
        'files': files,
        'totalSize': sum(f.get('size', 0) for f in files),
        'submittedAt': timestamp,
        'reviewedAt': None,
        'createdAt': timestamp,
        'updatedAt': timestamp,
    }


def new_channel_item(engagement: Dict[str, Any], timestamp: str) -> Dict[str, Any]:
    return {
        'engagementId': engagement['engagementId'],
        'participants': [engagement['companyId'], engagement['candidateId']],
        'accessState': AccessState.OPEN,
        'closeReason': None,
        'scheduledCloseAt': None,
        'scheduledCloseReason': None,
        'closeWarningsSent': 0,
        'archivedAt': None,
        'closeHistory': [],
        'version': 1,
        'createdAt': timestamp,
        'updatedAt': timestamp,
    }


# --- Serialization boundary -------------------------------------------------

def normalize_status(status: Optional[str]) -> str:
    """Map legacy status values onto the canonical enum."""
    if status == EngagementStatus.ACCEPTED:
        return EngagementStatus.ACTIVE
    if status not in EngagementStatus.ALL:
        return EngagementStatus.PENDING
    return status


def from_legacy_application(gig_id: str, company_id: str, application: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert an application embedded in a legacy gig document into an
    engagement item.

    Legacy applications duplicate the candidate (`user`/`freelancer`) and
    the status (`status`/`applicationStatus`); the first non-empty value wins.
    """
    candidate_id = application.get('freelancer') or application.get('user')
    status = application.get('applicationStatus') or application.get('status')
    total = int(application.get('totalIterations') or MIN_ITERATIONS)
    used = int(application.get('usedIterations') or 0)
    timestamp = application.get('appliedAt') or ''

    item = new_engagement_item(
        gig_id=gig_id,
        company_id=company_id,
        candidate_id=str(candidate_id),
        total_iterations=total,
        agreed_amount=Decimal(str(application.get('proposedRate') or 0)),
        timestamp=str(timestamp),
    )
    item['status'] = normalize_status(status)
    item['usedIterations'] = min(used, total)
    item['remainingIterations'] = total - item['usedIterations']
    return item


def engagement_view(item: Dict[str, Any]) -> Dict[str, Any]:
    """Public representation of an engagement."""
    status = normalize_status(item.get('status'))
    return {
        'engagementId': item['engagementId'],
        'gigId': item['gigId'],
        'companyId': item['companyId'],
        'candidateId': item['candidateId'],
        'status': status,
        # Older clients still read the aliased field
        'applicationStatus': status,
        'iterations': {
            'total': item['totalIterations'],
            'used': item['usedIterations'],
            'remaining': item['totalIterations'] - item['usedIterations'],
        },
        'escrowPaymentId': item.get('escrowPaymentId'),
        'currentSubmissionId': item.get('currentSubmissionId'),
        'awaitingReview': item.get('awaitingReview', False),
        'version': item.get('version'),
        'createdAt': item.get('createdAt'),
        'updatedAt': item.get('updatedAt'),
    }


def payment_view(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'paymentId': item['paymentId'],
        'engagementId': item['engagementId'],
        'status': item['status'],
        'amount': item['amount'],
        'platformFee': item.get('platformFee'),
        'totalAmount': item.get('totalAmount'),
        'currency': item.get('currency'),
        'orderRef': item.get('gatewayOrderRef'),
    }


MAX_AMOUNT = Decimal('10000000')


def parse_amount(value: Any, field: str = 'amount') -> Decimal:
    """Validate a money amount: positive, at most two decimal places."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f'Missing {field}')
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f'Invalid {field} format')
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f'{field} must be positive')
    if amount > MAX_AMOUNT:
        raise ValidationError(f'{field} exceeds the maximum of {MAX_AMOUNT}')
    if amount != amount.quantize(Decimal('0.01')):
        raise ValidationError(f'{field} must have at most two decimal places')
    return amount

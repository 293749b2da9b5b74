"""
Engagement state machine.

Owns the lifecycle of one (gig, candidate) engagement:

    pending --accept--> active
    active --submit--> active
    revision_requested --submit--> active
    active --approve--> completed
    active --request_revision--> revision_requested
    active|revision_requested --iterations_exhausted--> exhausted
    exhausted --raise_dispute--> disputed
    pending|active|revision_requested --reject--> rejected

Every transition is a single conditional write guarded by the status,
usedIterations and version that were read. Losing that race raises
ConcurrentModification; the caller re-reads and retries.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import iterations
from .config import config
from .entitlements import Entitlements
from .errors import (
    ConcurrentModification,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    PaymentNotVerified,
    ValidationError,
)
from .logging import logger
from .models import (
    EngagementEvent,
    EngagementStatus,
    NotificationKind,
    PaymentStatus,
    ReviewOutcome,
    new_engagement_item,
    normalize_status,
    parse_amount,
)
from .notifications import Notifier
from .store import ENGAGEMENTS, PAYMENTS, ConditionFailed, OneOf, Store, Update
from .utils import to_timestamp, utc_now

TRANSITIONS = {
    (EngagementStatus.PENDING, EngagementEvent.ACCEPT): EngagementStatus.ACTIVE,
    (EngagementStatus.ACTIVE, EngagementEvent.SUBMIT): EngagementStatus.ACTIVE,
    (EngagementStatus.REVISION_REQUESTED, EngagementEvent.SUBMIT): EngagementStatus.ACTIVE,
    (EngagementStatus.ACTIVE, EngagementEvent.APPROVE): EngagementStatus.COMPLETED,
    (EngagementStatus.ACTIVE, EngagementEvent.REQUEST_REVISION): EngagementStatus.REVISION_REQUESTED,
    (EngagementStatus.ACTIVE, EngagementEvent.ITERATIONS_EXHAUSTED): EngagementStatus.EXHAUSTED,
    (EngagementStatus.REVISION_REQUESTED, EngagementEvent.ITERATIONS_EXHAUSTED): EngagementStatus.EXHAUSTED,
    (EngagementStatus.EXHAUSTED, EngagementEvent.RAISE_DISPUTE): EngagementStatus.DISPUTED,
    (EngagementStatus.PENDING, EngagementEvent.REJECT): EngagementStatus.REJECTED,
    (EngagementStatus.ACTIVE, EngagementEvent.REJECT): EngagementStatus.REJECTED,
    (EngagementStatus.REVISION_REQUESTED, EngagementEvent.REJECT): EngagementStatus.REJECTED,
}

# Who hears about each transition, and as what
TRANSITION_NOTIFICATIONS = {
    EngagementEvent.ACCEPT: (('candidateId', 'companyId'), NotificationKind.ENGAGEMENT_ACTIVATED),
    EngagementEvent.SUBMIT: (('companyId',), NotificationKind.SUBMISSION_RECEIVED),
    EngagementEvent.APPROVE: (('candidateId',), NotificationKind.SUBMISSION_APPROVED),
    EngagementEvent.REQUEST_REVISION: (('candidateId',), NotificationKind.REVISION_REQUESTED),
    EngagementEvent.ITERATIONS_EXHAUSTED: (('candidateId', 'companyId'), NotificationKind.ITERATIONS_EXHAUSTED),
    EngagementEvent.RAISE_DISPUTE: (('companyId',), NotificationKind.DISPUTE_RAISED),
    EngagementEvent.REJECT: (('candidateId',), NotificationKind.ENGAGEMENT_REJECTED),
}

MAX_REASON_LENGTH = 1000

Listener = Callable[[Dict[str, Any], str], None]


def next_status(current: str, event: str) -> str:
    """Target status for an event, or InvalidTransition if the edge does not exist."""
    target = TRANSITIONS.get((normalize_status(current), event))
    if target is None:
        raise InvalidTransition(
            f"Cannot {event.replace('_', ' ')} an engagement that is {current}",
            current_status=current,
            event=event,
        )
    return target


def apply_update(item: Dict[str, Any], update: Update) -> Dict[str, Any]:
    """Local copy of an item with a committed update applied."""
    merged = dict(item)
    merged.update(update.set)
    for attr, entries in (update.append or {}).items():
        merged[attr] = list(merged.get(attr) or []) + list(entries)
    return merged


class EngagementStateMachine:
    """Transitions engagements and tells subscribers about committed changes."""

    def __init__(
        self,
        store: Store,
        entitlements: Entitlements,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.entitlements = entitlements
        self.notifier = notifier
        self.clock = clock
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        """Register a callback run after every committed transition."""
        self._listeners.append(listener)

    # --- Reads --------------------------------------------------------------

    def get(self, engagement_id: str) -> Dict[str, Any]:
        item = self.store.get(ENGAGEMENTS, engagement_id)
        if not item:
            raise NotFound('Engagement not found', {'engagementId': engagement_id})
        return item

    def get_for_participant(self, engagement_id: str, user_id: str) -> Dict[str, Any]:
        item = self.get(engagement_id)
        if user_id not in (item['companyId'], item['candidateId']):
            raise NotAuthorized('Not a participant in this engagement')
        return item

    def list_for_gig(self, gig_id: str, company_id: str) -> List[Dict[str, Any]]:
        items = [i for i in self.store.query(ENGAGEMENTS, 'gigId', gig_id) if i['companyId'] == company_id]
        return sorted(items, key=lambda i: i.get('createdAt') or '')

    # --- Commands -----------------------------------------------------------

    def create(
        self,
        gig_id: str,
        company_id: str,
        candidate_id: str,
        total_iterations: Any = None,
        agreed_amount: Any = None,
    ) -> Dict[str, Any]:
        """
        Record the company's decision to hire a candidate for a gig.

        The engagement starts `pending` until escrow is verified.

        Raises:
            ValidationError, EntitlementRequired, InvalidTransition (duplicate)
        """
        if not gig_id or not company_id or not candidate_id:
            raise ValidationError('gigId, companyId and candidateId are required')
        if company_id == candidate_id:
            raise ValidationError('A company cannot engage itself')

        total = iterations.validate_total(
            config.DEFAULT_TOTAL_ITERATIONS if total_iterations is None else total_iterations
        )
        amount = parse_amount(agreed_amount, 'agreedAmount')
        self.entitlements.require(company_id, 'create_engagement')

        item = new_engagement_item(
            gig_id=gig_id,
            company_id=company_id,
            candidate_id=candidate_id,
            total_iterations=total,
            agreed_amount=amount,
            timestamp=to_timestamp(self.clock()),
        )
        try:
            self.store.put_new(ENGAGEMENTS, item)
        except ConditionFailed:
            raise InvalidTransition(
                'An engagement already exists for this candidate on this gig',
                details={'engagementId': item['engagementId']}
            )

        logger.info(f"Created engagement {item['engagementId']} (gig {gig_id}, {total} iterations)")
        self.notifier.notify(candidate_id, NotificationKind.ENGAGEMENT_CREATED, {
            'engagementId': item['engagementId'],
            'gigId': gig_id,
            'totalIterations': total,
        })
        return item

    def accept(self, engagement_id: str, escrow_payment_id: str) -> Dict[str, Any]:
        """
        Activate a pending engagement once its escrow payment is verified.

        Idempotent: accepting an engagement that is already active on the same
        payment returns it unchanged.
        """
        item = self.get(engagement_id)
        if self._already_accepted(item, escrow_payment_id):
            logger.info(f"Engagement {engagement_id} already active on payment {escrow_payment_id}")
            return item

        if normalize_status(item['status']) != EngagementStatus.PENDING:
            raise InvalidTransition(
                f"Cannot accept an engagement that is {item['status']}",
                current_status=item['status'],
                event=EngagementEvent.ACCEPT,
            )

        payment = self.store.get(PAYMENTS, escrow_payment_id)
        if not payment or payment.get('engagementId') != engagement_id:
            raise NotFound('Escrow payment not found for this engagement', {'paymentId': escrow_payment_id})
        if payment['status'] != PaymentStatus.VERIFIED:
            raise PaymentNotVerified(
                'Escrow payment has not been verified',
                {'paymentId': escrow_payment_id, 'paymentStatus': payment['status']}
            )

        self.entitlements.require(item['companyId'], 'accept_engagement')

        try:
            return self.commit(item, EngagementEvent.ACCEPT, {
                'escrowPaymentId': escrow_payment_id,
                'acceptedAt': to_timestamp(self.clock()),
            })
        except ConcurrentModification:
            # A duplicate callback may have won the race on the same payment
            current = self.get(engagement_id)
            if self._already_accepted(current, escrow_payment_id):
                return current
            raise

    def reject(self, engagement_id: str, company_id: str, reason: str = '') -> Dict[str, Any]:
        """Company walks away before the first submission."""
        item = self.get(engagement_id)
        if item['companyId'] != company_id:
            raise NotAuthorized('Only the hiring company can reject this engagement')
        next_status(item['status'], EngagementEvent.REJECT)
        if iterations.used(item) > 0 or item.get('currentSubmissionId'):
            raise InvalidTransition(
                'An engagement cannot be rejected after the first submission',
                current_status=item['status'],
                event=EngagementEvent.REJECT,
            )
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f'reason must be at most {MAX_REASON_LENGTH} characters')

        extra = {'rejectedAt': to_timestamp(self.clock()), 'rejectReason': reason or None}
        payment = None
        if normalize_status(item['status']) == EngagementStatus.PENDING:
            payment = self._escrow_payment(item)
        if payment is None or payment['status'] == PaymentStatus.FAILED:
            return self.commit(item, EngagementEvent.REJECT, extra)

        if payment['status'] == PaymentStatus.VERIFIED:
            # Captured but not yet activated; funding resumes through create_intent
            raise InvalidTransition(
                'Escrow has already been captured for this engagement',
                current_status=item['status'],
                event=EngagementEvent.REJECT,
                details={'paymentId': payment['paymentId']},
            )

        # Abandon the in-flight payment in the same transaction
        update = self.plan(item, EngagementEvent.REJECT, extra)
        timestamp = update.set['updatedAt']
        abandon = Update(
            PAYMENTS,
            payment['paymentId'],
            {'status': PaymentStatus.FAILED, 'failureReason': 'Engagement rejected', 'updatedAt': timestamp},
            expected={'status': OneOf(PaymentStatus.IN_FLIGHT)},
            append={'statusHistory': [{
                'status': PaymentStatus.FAILED,
                'at': timestamp,
                'description': 'Engagement rejected before payment completed',
            }]},
        )
        try:
            self.store.transact([update, abandon])
        except ConditionFailed:
            logger.warning(f"Engagement {engagement_id} or payment {payment['paymentId']} changed during reject")
            raise ConcurrentModification(
                'Engagement or its payment was modified concurrently; reload and retry',
                {'engagementId': engagement_id, 'paymentId': payment['paymentId']}
            )

        logger.info(f"Abandoned in-flight payment {payment['paymentId']} on reject of {engagement_id}")
        rejected = apply_update(item, update)
        self.published(rejected, EngagementEvent.REJECT)
        return rejected

    def _escrow_payment(self, item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payment_id = item.get('escrowPaymentId')
        return self.store.get(PAYMENTS, payment_id) if payment_id else None

    def raise_dispute(self, engagement_id: str, candidate_id: str, reason: str) -> Dict[str, Any]:
        """Candidate escalates an exhausted engagement to external resolution."""
        item = self.get(engagement_id)
        if item['candidateId'] != candidate_id:
            raise NotAuthorized('Only the engaged candidate can raise a dispute')
        if not reason or not reason.strip():
            raise ValidationError('A reason is required to raise a dispute')
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f'reason must be at most {MAX_REASON_LENGTH} characters')

        next_status(item['status'], EngagementEvent.RAISE_DISPUTE)
        if not iterations.is_dispute_eligible(item):
            raise InvalidTransition(
                'A dispute can only be raised once half of the iterations have been used',
                current_status=item['status'],
                event=EngagementEvent.RAISE_DISPUTE,
                details={'iterations': iterations.summary(item)},
            )

        return self.commit(item, EngagementEvent.RAISE_DISPUTE, {
            'disputedAt': to_timestamp(self.clock()),
            'disputeReason': reason.strip(),
        })

    # --- Planning (used inside multi-record transactions) -------------------

    def plan(
        self,
        item: Dict[str, Any],
        event: str,
        extra: Optional[Dict[str, Any]] = None,
        expected_extra: Optional[Dict[str, Any]] = None,
    ) -> Update:
        """
        Conditional update moving `item` along `event`.

        Guarded by the status, usedIterations and version that were read.
        """
        status = next_status(item['status'], event)
        timestamp = to_timestamp(self.clock())
        set_values = {
            'status': status,
            'version': int(item.get('version') or 0) + 1,
            'updatedAt': timestamp,
        }
        set_values.update(extra or {})

        used = int(set_values.get('usedIterations', iterations.used(item)))
        total = iterations.total(item)
        if used > total:
            raise iterations.exhausted_error(item)
        set_values['remainingIterations'] = total - used

        expected = {
            'status': item['status'],
            'usedIterations': item.get('usedIterations'),
            'version': item.get('version'),
        }
        expected.update(expected_extra or {})

        append = None
        if status != item['status']:
            append = {'statusHistory': [{'status': status, 'event': event, 'at': timestamp}]}
        return Update(ENGAGEMENTS, item['engagementId'], set_values, expected, append)

    def plan_submit(self, item: Dict[str, Any], submission_id: str) -> Update:
        if item.get('awaitingReview'):
            raise InvalidTransition(
                'A submission is already awaiting review',
                current_status=item['status'],
                event=EngagementEvent.SUBMIT,
                details={'currentSubmissionId': item.get('currentSubmissionId')},
            )
        return self.plan(
            item,
            EngagementEvent.SUBMIT,
            {'currentSubmissionId': submission_id, 'awaitingReview': True},
            {'awaitingReview': False},
        )

    def plan_review(self, item: Dict[str, Any], outcome: str) -> Tuple[str, Update]:
        """
        Engagement half of recording a review outcome.

        Returns the event taken and the conditional update that takes it.

        revision_requested spends one iteration; when that leaves nothing the
        engagement is exhausted instead.

        Raises:
            NoIterationsRemaining: if the budget would go negative
        """
        timestamp = to_timestamp(self.clock())
        extra = {'awaitingReview': False}
        expected_extra = {'awaitingReview': True}

        if outcome == ReviewOutcome.APPROVED:
            extra['completedAt'] = timestamp
            event = EngagementEvent.APPROVE
            return event, self.plan(item, event, extra, expected_extra)

        if outcome == ReviewOutcome.REJECTED:
            extra['rejectedAt'] = timestamp
            event = EngagementEvent.REJECT
            return event, self.plan(item, event, extra, expected_extra)

        if outcome == ReviewOutcome.REVISION_REQUESTED:
            new_used, new_remaining = iterations.consume(item)
            extra['usedIterations'] = new_used
            if new_remaining > 0:
                event = EngagementEvent.REQUEST_REVISION
                return event, self.plan(item, event, extra, expected_extra)
            extra['exhaustedAt'] = timestamp
            event = EngagementEvent.ITERATIONS_EXHAUSTED
            return event, self.plan(item, event, extra, expected_extra)

        raise ValidationError(f'Unknown review outcome: {outcome}')

    # --- Committing ---------------------------------------------------------

    def commit(self, item: Dict[str, Any], event: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Plan and write a single-record transition, then publish it."""
        update = self.plan(item, event, extra)
        try:
            updated = self.store.update(update.table, update.key, update.set, update.expected, update.append)
        except ConditionFailed:
            logger.warning(f"Engagement {item['engagementId']} changed concurrently during {event}")
            raise ConcurrentModification(
                'Engagement was modified concurrently; reload and retry',
                {'engagementId': item['engagementId'], 'event': event}
            )
        self.published(updated, event)
        return updated

    def published(self, item: Dict[str, Any], event: str) -> None:
        """
        Run post-commit side effects for a transition.

        Failures are logged only: the transition is already durable.
        """
        logger.info(f"Engagement {item['engagementId']} {event} -> {item['status']}")
        self._notify(item, event)
        for listener in self._listeners:
            try:
                listener(item, event)
            except Exception as e:
                logger.warning(f"Post-transition listener failed for {item['engagementId']} ({event}): {e}")

    def _notify(self, item: Dict[str, Any], event: str) -> None:
        recipients, kind = TRANSITION_NOTIFICATIONS.get(event, ((), None))
        if not kind:
            return
        payload = {
            'engagementId': item['engagementId'],
            'gigId': item['gigId'],
            'status': item['status'],
            'iterations': iterations.summary(item),
        }
        for field in recipients:
            self.notifier.notify(item[field], kind, payload)

    @staticmethod
    def _already_accepted(item: Dict[str, Any], escrow_payment_id: str) -> bool:
        return (
            normalize_status(item['status']) != EngagementStatus.PENDING
            and item.get('escrowPaymentId') == escrow_payment_id
            and bool(item.get('acceptedAt'))
        )

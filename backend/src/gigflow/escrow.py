"""
Escrow payment coordinator.

Two-phase protocol against the payment gateway:

1. create_intent  - persist EscrowPayment(initiated), open a gateway order,
                    move to pending_verification
2. verify_callback / handle_webhook / reconcile
                  - authenticate the gateway's answer, settle the payment
                    (verified or failed) and activate the engagement

Settlement is a conditional write from an in-flight status, so replays of the
same callback produce one verified record and one activation.
"""
import json
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, Optional

from .config import config
from .engagements import EngagementStateMachine
from .entitlements import Entitlements
from .errors import (
    ConcurrentModification,
    EngagementError,
    ExternalCollaboratorError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    PaymentVerificationFailed,
    ValidationError,
)
from .gateway import CAPTURED_STATUSES, FAILED_STATUSES, PaymentGateway
from .logging import logger
from .models import (
    EngagementStatus,
    NotificationKind,
    PaymentStatus,
    new_payment_item,
    normalize_status,
    parse_amount,
)
from .notifications import Notifier
from .signatures import verify_checkout_signature, verify_webhook_signature
from .store import ENGAGEMENTS, PAYMENTS, ConditionFailed, OneOf, Put, Store, Update
from .utils import to_timestamp, utc_now

CAPTURE_EVENTS = ('payment.captured', 'order.paid')
FAILURE_EVENTS = ('payment.failed',)


def calculate_platform_fee(amount: Decimal, fee_percent: Decimal) -> Decimal:
    """Platform fee on top of the agreed amount, rounded down to cents."""
    return (amount * fee_percent).quantize(Decimal('0.01'), rounding=ROUND_DOWN)


class EscrowCoordinator:
    """Funds engagements through the payment gateway."""

    def __init__(
        self,
        store: Store,
        engagements: EngagementStateMachine,
        gateway: PaymentGateway,
        entitlements: Entitlements,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        key_secret: str = None,
        webhook_secret: str = None,
        fee_percent: Decimal = None,
        currency: str = None,
    ):
        self.store = store
        self.engagements = engagements
        self.gateway = gateway
        self.entitlements = entitlements
        self.notifier = notifier
        self.clock = clock
        self.key_secret = key_secret if key_secret is not None else config.GATEWAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.GATEWAY_WEBHOOK_SECRET
        self.fee_percent = fee_percent if fee_percent is not None else config.PLATFORM_FEE_PERCENT
        self.currency = currency or config.GATEWAY_CURRENCY

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        payment = self.store.get(PAYMENTS, payment_id)
        if not payment:
            raise NotFound('Escrow payment not found', {'paymentId': payment_id})
        return payment

    # --- Phase 1 ------------------------------------------------------------

    def create_intent(self, engagement_id: str, company_id: str, amount: Any = None) -> Dict[str, Any]:
        """
        Start funding a pending engagement.

        Reuses the engagement's in-flight payment if there is one, so retrying
        after a gateway timeout resumes the same payment instead of opening a
        second one.

        Raises:
            NotAuthorized, InvalidTransition, EntitlementRequired,
            ConcurrentModification, GatewayTimeout
        """
        engagement = self.engagements.get(engagement_id)
        if engagement['companyId'] != company_id:
            raise NotAuthorized('Only the hiring company can fund this engagement')
        if normalize_status(engagement['status']) != EngagementStatus.PENDING:
            raise InvalidTransition(
                f"Cannot fund an engagement that is {engagement['status']}",
                current_status=engagement['status'],
            )
        self.entitlements.require(company_id, 'create_escrow_intent')

        linked = self._linked_payment(engagement)
        if linked and linked['status'] == PaymentStatus.VERIFIED:
            # Funds already captured; only the activation is outstanding
            logger.info(f"Resuming activation of engagement {engagement_id} on verified payment {linked['paymentId']}")
            self._activate(linked)
            return linked
        if linked and linked['status'] in PaymentStatus.IN_FLIGHT:
            logger.info(f"Reusing in-flight payment {linked['paymentId']} for engagement {engagement_id}")
            if linked['status'] == PaymentStatus.PENDING_VERIFICATION:
                return linked
            return self._open_order(linked)

        value = parse_amount(amount if amount is not None else engagement.get('agreedAmount'))
        timestamp = to_timestamp(self.clock())
        payment = new_payment_item(
            engagement_id,
            value,
            calculate_platform_fee(value, self.fee_percent),
            self.currency,
            timestamp,
        )
        link = Update(
            ENGAGEMENTS,
            engagement_id,
            {
                'escrowPaymentId': payment['paymentId'],
                'version': int(engagement.get('version') or 0) + 1,
                'updatedAt': timestamp,
            },
            expected={'status': engagement['status'], 'version': engagement.get('version')},
        )
        try:
            self.store.transact([Put(PAYMENTS, payment), link])
        except ConditionFailed:
            raise ConcurrentModification(
                'Engagement was modified concurrently; reload and retry',
                {'engagementId': engagement_id}
            )

        logger.info(f"Created escrow payment {payment['paymentId']} for engagement {engagement_id}: {value}")
        return self._open_order(payment)

    def _linked_payment(self, engagement: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payment_id = engagement.get('escrowPaymentId')
        if not payment_id:
            return None
        return self.store.get(PAYMENTS, payment_id)

    def _open_order(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        # GatewayTimeout propagates with the payment still initiated
        order_ref = self.gateway.create_order(
            payment['totalAmount'],
            payment['currency'],
            receipt=payment['paymentId'],
            notes={'engagementId': payment['engagementId'], 'paymentId': payment['paymentId']},
        )
        timestamp = to_timestamp(self.clock())
        try:
            return self.store.update(
                PAYMENTS,
                payment['paymentId'],
                {
                    'status': PaymentStatus.PENDING_VERIFICATION,
                    'gatewayOrderRef': order_ref,
                    'updatedAt': timestamp,
                },
                expected={'status': PaymentStatus.INITIATED},
                append={'statusHistory': [{
                    'status': PaymentStatus.PENDING_VERIFICATION,
                    'at': timestamp,
                    'description': f'Gateway order {order_ref} created',
                }]},
            )
        except ConditionFailed:
            logger.warning(f"Payment {payment['paymentId']} left initiated concurrently; order {order_ref} unused")
            return self.get_payment(payment['paymentId'])

    # --- Phase 2 ------------------------------------------------------------

    def verify_callback(self, order_ref: str, payment_ref: str, signature: str, company_id: str) -> Dict[str, Any]:
        """
        Verify the checkout callback and activate the engagement.

        Only the hiring company may relay a callback; anyone else is refused
        before the signature is looked at, so they cannot fail its payment.

        Returns:
            dict with `payment`, `engagement` and `duplicate` (True for replays)
        """
        if not order_ref or not payment_ref:
            raise ValidationError('orderRef and paymentRef are required')

        payment = self._payment_for_order(order_ref)
        if payment is None:
            raise NotFound('No escrow payment for this order', {'orderRef': order_ref})
        engagement = self.store.get(ENGAGEMENTS, payment['engagementId'])
        if not engagement or engagement['companyId'] != company_id:
            logger.warning(f"Callback for payment {payment['paymentId']} relayed by non-owner {company_id}")
            raise NotAuthorized('Only the hiring company can verify this payment')

        valid = verify_checkout_signature(self.key_secret, order_ref, payment_ref, signature)
        status = payment['status']

        if status == PaymentStatus.VERIFIED:
            if not valid:
                logger.warning(f"Bad signature presented for verified payment {payment['paymentId']}")
                raise PaymentVerificationFailed('Payment signature verification failed')
            if payment.get('gatewayPaymentRef') != payment_ref:
                raise InvalidTransition(
                    'Payment was already verified with a different gateway payment',
                    details={'paymentId': payment['paymentId']}
                )
            logger.info(f"Duplicate callback for payment {payment['paymentId']}")
            return {
                'payment': payment,
                'engagement': self._activate(payment),
                'duplicate': True,
            }

        if status == PaymentStatus.FAILED:
            if not valid:
                raise PaymentVerificationFailed('Payment signature verification failed')
            logger.error(f"Gateway payment {payment_ref} completed on failed escrow payment "
                         f"{payment['paymentId']}; needs manual refund")
            raise InvalidTransition(
                'Payment has already failed; create a new intent',
                details={'paymentId': payment['paymentId']}
            )

        if not valid:
            self._mark_failed(payment, 'Signature verification failed')
            raise PaymentVerificationFailed(
                'Payment signature verification failed',
                {'paymentId': payment['paymentId']}
            )

        return self._settle(payment, payment_ref, signature, 'checkout callback')

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Process a gateway webhook.

        Only a bad signature or an unparseable body is an error; anything we
        do not handle is acknowledged so the gateway stops redelivering.
        """
        if not verify_webhook_signature(self.webhook_secret, raw_body, signature):
            logger.warning('Rejected webhook with invalid signature')
            raise PaymentVerificationFailed('Invalid webhook signature')

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationError('Webhook body is not valid JSON')

        event_type = event.get('event')
        payload = event.get('payload') or {}
        entity = (payload.get('payment') or {}).get('entity') or {}
        order_ref = entity.get('order_id') or ((payload.get('order') or {}).get('entity') or {}).get('id')
        payment_ref = entity.get('id')

        if event_type not in CAPTURE_EVENTS + FAILURE_EVENTS:
            logger.info(f"Ignoring webhook event {event_type}")
            return {'status': 'ignored', 'event': event_type}

        payment = self._payment_for_order(order_ref) if order_ref else None
        if payment is None:
            logger.warning(f"Webhook {event_type} for unknown order {order_ref}")
            return {'status': 'ignored', 'event': event_type}

        if event_type in FAILURE_EVENTS:
            if payment['status'] in PaymentStatus.IN_FLIGHT:
                self._mark_failed(payment, entity.get('error_description') or 'Gateway reported failure')
                return {'status': 'failed', 'paymentId': payment['paymentId']}
            return {'status': 'ignored', 'event': event_type}

        if not payment_ref:
            logger.warning(f"Webhook {event_type} for order {order_ref} carries no payment")
            return {'status': 'ignored', 'event': event_type}

        if payment['status'] == PaymentStatus.FAILED:
            logger.error(
                f"Gateway captured payment {payment_ref} on failed escrow payment "
                f"{payment['paymentId']}; needs manual refund"
            )
            return {'status': 'ignored', 'event': event_type}

        try:
            if payment['status'] == PaymentStatus.VERIFIED:
                self._activate(payment)
                return {'status': 'duplicate', 'paymentId': payment['paymentId']}
            self._settle(payment, payment_ref, None, 'webhook')
        except EngagementError as e:
            logger.warning(f"Webhook settlement for {payment['paymentId']} did not activate ({e.code}): {e.message}")
            return {'status': 'settled', 'paymentId': payment['paymentId'], 'activated': False}

        return {'status': 'settled', 'paymentId': payment['paymentId'], 'activated': True}

    def reconcile(self, older_than_minutes: int = None) -> Dict[str, int]:
        """
        Settle payments stuck in pending_verification by asking the gateway.

        Runs on a schedule; catches callbacks and webhooks that never arrived.
        """
        minutes = older_than_minutes if older_than_minutes is not None else config.RECONCILE_AFTER_MINUTES
        cutoff = to_timestamp(self.clock() - timedelta(minutes=minutes))
        stuck = [
            p for p in self.store.query(PAYMENTS, 'status', PaymentStatus.PENDING_VERIFICATION)
            if (p.get('updatedAt') or '') <= cutoff
        ]
        summary = {'checked': len(stuck), 'settled': 0, 'failed': 0, 'unchanged': 0, 'errors': 0}

        for payment in stuck:
            try:
                attempts = self.gateway.fetch_order_payments(payment['gatewayOrderRef'])
            except ExternalCollaboratorError as e:
                logger.warning(f"Could not reconcile payment {payment['paymentId']}: {e.message}")
                summary['errors'] += 1
                continue

            captured = next((a for a in attempts if a.get('status') in CAPTURED_STATUSES), None)
            if captured:
                try:
                    self._settle(payment, captured['id'], None, 'reconciliation')
                    summary['settled'] += 1
                except EngagementError as e:
                    logger.warning(f"Reconciliation of {payment['paymentId']} incomplete: {e.message}")
                    summary['errors'] += 1
            elif attempts and all(a.get('status') in FAILED_STATUSES for a in attempts):
                self._mark_failed(payment, 'Gateway reported every attempt failed')
                summary['failed'] += 1
            else:
                summary['unchanged'] += 1

        logger.info(f"Reconciliation finished: {summary}")
        return summary

    # --- Settlement ---------------------------------------------------------

    def _settle(
        self,
        payment: Dict[str, Any],
        payment_ref: str,
        signature: Optional[str],
        source: str,
    ) -> Dict[str, Any]:
        engagement = self.store.get(ENGAGEMENTS, payment['engagementId'])
        if engagement and normalize_status(engagement['status']) in EngagementStatus.TERMINAL:
            logger.error(
                f"Gateway payment {payment_ref} arrived for {engagement['status']} engagement "
                f"{payment['engagementId']}; needs manual refund"
            )
            self._mark_failed(payment, f"Engagement is {engagement['status']}")
            raise InvalidTransition(
                f"Cannot fund an engagement that is {engagement['status']}",
                current_status=engagement['status'],
                details={'paymentId': payment['paymentId']},
            )

        timestamp = to_timestamp(self.clock())
        changes = {
            'status': PaymentStatus.VERIFIED,
            'gatewayPaymentRef': payment_ref,
            'verifiedAt': timestamp,
            'updatedAt': timestamp,
        }
        if signature:
            changes['signature'] = signature

        duplicate = False
        try:
            payment = self.store.update(
                PAYMENTS,
                payment['paymentId'],
                changes,
                expected={'status': OneOf(PaymentStatus.IN_FLIGHT)},
                append={'statusHistory': [{
                    'status': PaymentStatus.VERIFIED,
                    'at': timestamp,
                    'description': f'Verified via {source}',
                    'paymentRef': payment_ref,
                }]},
            )
        except ConditionFailed:
            current = self.get_payment(payment['paymentId'])
            if current['status'] != PaymentStatus.VERIFIED:
                raise InvalidTransition(
                    f"Payment is {current['status']}",
                    details={'paymentId': current['paymentId']}
                )
            if current.get('gatewayPaymentRef') != payment_ref:
                raise InvalidTransition(
                    'Payment was already verified with a different gateway payment',
                    details={'paymentId': current['paymentId']}
                )
            # A concurrent replay settled it first
            payment = current
            duplicate = True

        logger.info(f"Payment {payment['paymentId']} verified via {source}")
        return {
            'payment': payment,
            'engagement': self._activate(payment),
            'duplicate': duplicate,
        }

    def _activate(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        return self.engagements.accept(payment['engagementId'], payment['paymentId'])

    def _mark_failed(self, payment: Dict[str, Any], reason: str) -> None:
        timestamp = to_timestamp(self.clock())
        try:
            self.store.update(
                PAYMENTS,
                payment['paymentId'],
                {'status': PaymentStatus.FAILED, 'failureReason': reason, 'updatedAt': timestamp},
                expected={'status': OneOf(PaymentStatus.IN_FLIGHT)},
                append={'statusHistory': [{
                    'status': PaymentStatus.FAILED,
                    'at': timestamp,
                    'description': reason,
                }]},
            )
        except ConditionFailed:
            # Already settled one way or the other; never downgrade
            logger.info(f"Payment {payment['paymentId']} no longer in flight, not marking failed")
            return

        logger.warning(f"Payment {payment['paymentId']} failed: {reason}")
        engagement = self.store.get(ENGAGEMENTS, payment['engagementId'])
        if engagement:
            self.notifier.notify(engagement['companyId'], NotificationKind.PAYMENT_FAILED, {
                'engagementId': payment['engagementId'],
                'paymentId': payment['paymentId'],
                'reason': reason,
            })

    def _payment_for_order(self, order_ref: str) -> Optional[Dict[str, Any]]:
        matches = self.store.query(PAYMENTS, 'gatewayOrderRef', order_ref)
        if len(matches) > 1:
            logger.error(f"Order {order_ref} maps to {len(matches)} payments")
        return matches[0] if matches else None

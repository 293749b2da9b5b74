"""
Tests for the external collaborators: S3 storage, SQS notifications,
subscription entitlements, the payment gateway client and signatures.
"""
import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from gigflow.entitlements import Entitlements
from gigflow.errors import EntitlementRequired, ExternalCollaboratorError, GatewayTimeout, PaymentVerificationFailed
from gigflow.gateway import PaymentGateway, to_minor_units
from gigflow.logging import event_summary, log_event
from gigflow.notifications import Notifier
from gigflow.signatures import (
    checkout_signature,
    compute_hmac,
    verify_checkout_signature,
    verify_webhook_signature,
)
from gigflow.storage import DeliverableStorage
from gigflow.store import SUBSCRIPTIONS
from gigflow.utils import to_timestamp


class TestDeliverableStorage:

    def test_store_uploads_under_engagement_prefix(self):
        s3 = MagicMock()
        storage = DeliverableStorage(s3_client=s3, bucket_name='deliverables')

        url = storage.store(b'data', 'application/pdf', 'eng-1')

        kwargs = s3.put_object.call_args.kwargs
        assert kwargs['Bucket'] == 'deliverables'
        assert kwargs['Key'].startswith('deliverables/eng-1/')
        assert kwargs['Key'].endswith('.pdf')
        assert url == f"https://deliverables.s3.amazonaws.com/{kwargs['Key']}"

    def test_upload_failure_raises_collaborator_error(self):
        s3 = MagicMock()
        s3.put_object.side_effect = ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'no'}}, 'PutObject')

        with pytest.raises(ExternalCollaboratorError):
            DeliverableStorage(s3_client=s3, bucket_name='deliverables').store(b'data', 'text/plain')

    def test_missing_bucket(self):
        with pytest.raises(ExternalCollaboratorError):
            DeliverableStorage(s3_client=MagicMock(), bucket_name='').store(b'data', 'text/plain')

    def test_presigned_url_for_own_objects_only(self):
        s3 = MagicMock()
        s3.generate_presigned_url.return_value = 'https://signed'
        storage = DeliverableStorage(s3_client=s3, bucket_name='deliverables')

        assert storage.presigned_url('https://deliverables.s3.amazonaws.com/deliverables/a.pdf') == 'https://signed'
        assert s3.generate_presigned_url.call_args.kwargs['Params'] == {
            'Bucket': 'deliverables', 'Key': 'deliverables/a.pdf',
        }
        assert storage.presigned_url('https://example.com/a.pdf') == 'https://example.com/a.pdf'


class TestNotifier:

    def test_notify_sends_to_queue(self):
        sqs = MagicMock()
        notifier = Notifier(sqs_client=sqs, queue_url='https://sqs/queue')

        assert notifier.notify('user-1', 'submission_received', {'amount': Decimal('5.00')}) is True

        message = json.loads(sqs.send_message.call_args.kwargs['MessageBody'])
        assert message['userId'] == 'user-1'
        assert message['kind'] == 'submission_received'

    def test_failures_are_swallowed(self):
        sqs = MagicMock()
        sqs.send_message.side_effect = ClientError({'Error': {'Code': 'Throttling', 'Message': 'slow'}}, 'SendMessage')

        assert Notifier(sqs_client=sqs, queue_url='https://sqs/queue').notify('u', 'k', {}) is False

    def test_no_queue_configured(self):
        sqs = MagicMock()
        assert Notifier(sqs_client=sqs, queue_url='').notify('u', 'k', {}) is False
        sqs.send_message.assert_not_called()


class TestEntitlements:

    def test_active_subscription(self, store, clock):
        store.put_new(SUBSCRIPTIONS, {'companyId': 'c1', 'status': 'active'})
        assert Entitlements(store, clock=clock).can_act_on('c1') is True

    def test_expired_subscription(self, store, clock):
        expired = to_timestamp(clock() - timedelta(days=1))
        store.put_new(SUBSCRIPTIONS, {'companyId': 'c1', 'status': 'trialing', 'expiresAt': expired})

        with pytest.raises(EntitlementRequired):
            Entitlements(store, clock=clock).require('c1', 'create_engagement')

    def test_cancelled_subscription(self, store, clock):
        store.put_new(SUBSCRIPTIONS, {'companyId': 'c1', 'status': 'cancelled'})
        assert Entitlements(store, clock=clock).can_act_on('c1') is False


class TestPaymentGateway:

    def test_minor_units(self):
        assert to_minor_units(Decimal('525.00')) == 52500
        assert to_minor_units(Decimal('0.015')) == 2

    def test_create_order_uses_basic_auth(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'id': 'order_9'})

        gateway = PaymentGateway('https://gw.test/v1', 'key', 'secret', 1, transport=httpx.MockTransport(handler))

        assert gateway.create_order(Decimal('10.00'), 'INR', 'receipt-1', {'engagementId': 'e1'}) == 'order_9'
        assert seen[0].headers['authorization'].startswith('Basic ')
        assert json.loads(seen[0].content)['amount'] == 1000

    def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout('slow', request=request)

        gateway = PaymentGateway('https://gw.test/v1', 'key', 'secret', 1, transport=httpx.MockTransport(handler))
        with pytest.raises(GatewayTimeout):
            gateway.create_order(Decimal('10.00'), 'INR', 'r', {})

    def test_error_status(self):
        gateway = PaymentGateway(
            'https://gw.test/v1', 'key', 'secret', 1,
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={'error': 'auth'})),
        )
        with pytest.raises(ExternalCollaboratorError) as exc_info:
            gateway.fetch_order_payments('order_1')
        assert exc_info.value.details == {'statusCode': 401}


class TestSignatures:

    def test_checkout_signature_round_trip(self):
        signature = checkout_signature('secret', 'order_1', 'pay_1')

        assert verify_checkout_signature('secret', 'order_1', 'pay_1', signature)
        assert not verify_checkout_signature('secret', 'order_1', 'pay_2', signature)
        assert not verify_checkout_signature('secret', 'order_1', 'pay_1', None)

    def test_known_vector(self):
        # HMAC-SHA256("key", "The quick brown fox jumps over the lazy dog")
        assert compute_hmac('key', 'The quick brown fox jumps over the lazy dog') == (
            'f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8'
        )

    def test_webhook_signature_over_raw_body(self):
        body = b'{"event":"payment.captured"}'
        assert verify_webhook_signature('whsec', body, compute_hmac('whsec', body))
        assert not verify_webhook_signature('whsec', body + b' ', compute_hmac('whsec', body))

    def test_missing_secret(self):
        with pytest.raises(PaymentVerificationFailed):
            compute_hmac('', 'payload')


class TestEventLogging:

    def test_api_event_summary_omits_body_and_headers(self, caplog):
        event = {
            'requestContext': {'requestId': 'req-1', 'authorizer': {'claims': {'sub': 'company-1'}}},
            'httpMethod': 'POST',
            'resource': '/escrow/verify',
            'pathParameters': None,
            'headers': {'X-Razorpay-Signature': 'secret-signature'},
            'body': '{"paymentRef": "pay_1"}',
        }

        with caplog.at_level('INFO', logger='gigflow'):
            log_event(event)

        assert 'req-1' in caplog.text
        assert 'company-1' in caplog.text
        assert 'secret-signature' not in caplog.text
        assert 'pay_1' not in caplog.text

    def test_scheduled_event_summary(self):
        summary = event_summary({'source': 'aws.events', 'detail-type': 'Scheduled Event', 'time': 't'})
        assert summary == {'source': 'aws.events', 'detailType': 'Scheduled Event', 'time': 't'}

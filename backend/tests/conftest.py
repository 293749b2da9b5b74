"""
Shared fixtures: engines wired over the in-memory store, a fixed clock and a
fake gateway served through httpx.MockTransport.
"""
import json
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

# Add src to path for import
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from gigflow.channels import ChannelAccessGate  # noqa: E402
from gigflow.engagements import EngagementStateMachine  # noqa: E402
from gigflow.entitlements import AllowAllEntitlements  # noqa: E402
from gigflow.escrow import EscrowCoordinator  # noqa: E402
from gigflow.gateway import PaymentGateway  # noqa: E402
from gigflow.notifications import RecordingNotifier  # noqa: E402
from gigflow.reviews import ReviewStateMachine  # noqa: E402
from gigflow.signatures import checkout_signature  # noqa: E402
from gigflow.store import InMemoryStore  # noqa: E402

KEY_SECRET = 'test_key_secret'
WEBHOOK_SECRET = 'test_webhook_secret'
GATEWAY_URL = 'https://gateway.test/v1'

GIG = 'gig-1'
COMPANY = 'company-1'
CANDIDATE = 'candidate-1'


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeGatewayServer:
    """Request handler imitating the gateway's orders API."""

    def __init__(self):
        self.orders = {}
        self.order_payments = {}
        self.requests = []
        self.timeout = False
        self.fail_status = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout('timed out', request=request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={'error': {'description': 'rejected'}})

        path = request.url.path
        if request.method == 'POST' and path.endswith('/orders'):
            order_id = f'order_{len(self.orders) + 1}'
            self.orders[order_id] = json.loads(request.content)
            return httpx.Response(200, json={'id': order_id, 'status': 'created', **self.orders[order_id]})
        if request.method == 'GET' and path.endswith('/payments'):
            order_id = path.split('/')[-2]
            return httpx.Response(200, json={'items': self.order_payments.get(order_id, [])})
        return httpx.Response(404, json={'error': {'description': 'not found'}})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gate(store, notifier, clock):
    return ChannelAccessGate(store, notifier, clock=clock)


@pytest.fixture
def engagements(store, notifier, clock, gate):
    machine = EngagementStateMachine(store, AllowAllEntitlements(), notifier, clock=clock)
    machine.subscribe(gate.on_transition)
    return machine


@pytest.fixture
def gateway_server():
    return FakeGatewayServer()


@pytest.fixture
def gateway(gateway_server):
    return PaymentGateway(
        base_url=GATEWAY_URL,
        key_id='key_test',
        key_secret=KEY_SECRET,
        timeout=2,
        transport=httpx.MockTransport(gateway_server),
    )


@pytest.fixture
def escrow(store, engagements, gateway, notifier, clock):
    return EscrowCoordinator(
        store,
        engagements,
        gateway,
        AllowAllEntitlements(),
        notifier,
        clock=clock,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        fee_percent=Decimal('0.05'),
        currency='INR',
    )


@pytest.fixture
def storage():
    s3_storage = MagicMock()
    s3_storage.store.side_effect = (
        lambda data, content_type, engagement_id='':
        f'https://deliverables.s3.amazonaws.com/deliverables/{engagement_id}/{uuid.uuid4()}'
    )
    s3_storage.presigned_url.side_effect = lambda url, expiration=None: f'{url}?X-Amz-Signature=test'
    return s3_storage


@pytest.fixture
def reviews(store, engagements, storage, clock):
    return ReviewStateMachine(store, engagements, storage, clock=clock)


@pytest.fixture
def pending_engagement(engagements):
    return engagements.create(GIG, COMPANY, CANDIDATE, total_iterations=3, agreed_amount='500.00')


def fund(escrow, engagement_id, payment_ref='pay_1'):
    """Run the full escrow protocol with a genuine checkout signature."""
    payment = escrow.create_intent(engagement_id, COMPANY)
    order_ref = payment['gatewayOrderRef']
    signature = checkout_signature(KEY_SECRET, order_ref, payment_ref)
    return escrow.verify_callback(order_ref, payment_ref, signature, COMPANY)


@pytest.fixture
def active_engagement(escrow, pending_engagement):
    return fund(escrow, pending_engagement['engagementId'])['engagement']


def sample_files(count=1):
    return [
        {'name': f'design-v{i}.pdf', 'contentType': 'application/pdf', 'content': b'%PDF-1.4 deliverable'}
        for i in range(count)
    ]


def submit(reviews, engagement_id, description='Latest version'):
    return reviews.submit(engagement_id, CANDIDATE, sample_files(), description)

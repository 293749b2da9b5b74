"""
Wiring for Lambda handlers.

Engines are built once per container and reused across invocations, the same
way boto3 clients are created at module load.
"""
from functools import lru_cache

from .channels import ChannelAccessGate
from .config import config
from .dynamo import DynamoStore
from .engagements import EngagementStateMachine
from .entitlements import AllowAllEntitlements, Entitlements
from .escrow import EscrowCoordinator
from .gateway import PaymentGateway
from .logging import logger
from .notifications import Notifier, RecordingNotifier
from .reviews import ReviewStateMachine
from .storage import DeliverableStorage
from .store import InMemoryStore


@lru_cache(maxsize=None)
def get_store():
    if config.STORE_BACKEND == 'memory':
        logger.info('Using in-memory store')
        return InMemoryStore()
    return DynamoStore()


@lru_cache(maxsize=None)
def get_notifier():
    if config.STORE_BACKEND == 'memory':
        return RecordingNotifier()
    return Notifier()


@lru_cache(maxsize=None)
def get_entitlements():
    if config.STORE_BACKEND == 'memory':
        return AllowAllEntitlements()
    return Entitlements(get_store())


@lru_cache(maxsize=None)
def get_channels() -> ChannelAccessGate:
    return ChannelAccessGate(get_store(), get_notifier())


@lru_cache(maxsize=None)
def get_engagements() -> EngagementStateMachine:
    machine = EngagementStateMachine(get_store(), get_entitlements(), get_notifier())
    machine.subscribe(get_channels().on_transition)
    return machine


@lru_cache(maxsize=None)
def get_escrow() -> EscrowCoordinator:
    return EscrowCoordinator(
        get_store(),
        get_engagements(),
        PaymentGateway(),
        get_entitlements(),
        get_notifier(),
    )


@lru_cache(maxsize=None)
def get_reviews() -> ReviewStateMachine:
    return ReviewStateMachine(get_store(), get_engagements(), DeliverableStorage())


def reset():
    """Drop cached engines (tests switch config between cases)."""
    for factory in (get_store, get_notifier, get_entitlements, get_channels,
                    get_engagements, get_escrow, get_reviews):
        factory.cache_clear()

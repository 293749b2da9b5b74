"""
Entitlement collaborator.
Subscription billing lives elsewhere; we only read whether a company's
subscription currently allows it to hire.
"""
from datetime import datetime
from typing import Callable, Optional

from .errors import EntitlementRequired
from .logging import logger
from .store import SUBSCRIPTIONS, Store
from .utils import parse_timestamp, utc_now

ENTITLED_STATUSES = ('active', 'trialing')


class Entitlements:
    """Reads the subscriptions table kept up to date by the billing service."""

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utc_now

    def can_act_on(self, company_id: str) -> bool:
        subscription = self.store.get(SUBSCRIPTIONS, company_id)
        if not subscription:
            return False
        if subscription.get('status') not in ENTITLED_STATUSES:
            return False
        expires_at = parse_timestamp(subscription.get('expiresAt'))
        return expires_at is None or expires_at > self.clock()

    def require(self, company_id: str, action: str) -> None:
        if not self.can_act_on(company_id):
            logger.info(f"Company {company_id} not entitled to {action}")
            raise EntitlementRequired(
                'An active subscription is required for this action',
                {'companyId': company_id, 'action': action}
            )


class AllowAllEntitlements(Entitlements):
    """Entitlement check for deployments without billing."""

    def __init__(self):
        super().__init__(store=None)

    def can_act_on(self, company_id):
        return True

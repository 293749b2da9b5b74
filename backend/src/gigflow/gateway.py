"""
Payment gateway client (Razorpay-compatible orders API).

Every call has a bounded timeout. Timeouts surface as GatewayTimeout so the
caller can leave the engagement pending and retry later.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from .config import config
from .errors import ExternalCollaboratorError, GatewayTimeout
from .logging import logger

# Captured payments settle an order; failed ones fail it
CAPTURED_STATUSES = ('captured',)
FAILED_STATUSES = ('failed',)


def to_minor_units(amount: Decimal) -> int:
    """Gateway amounts are integers in the currency's minor unit (paise, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


class PaymentGateway:
    """Thin synchronous client over the gateway's REST API."""

    def __init__(
        self,
        base_url: str = None,
        key_id: str = None,
        key_secret: str = None,
        timeout: float = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or config.GATEWAY_BASE_URL).rstrip('/')
        self.key_id = key_id if key_id is not None else config.GATEWAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else config.GATEWAY_KEY_SECRET
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self.transport,
        )

    def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway {operation} timed out after {self.timeout}s: {e}")
            raise GatewayTimeout(f"Payment gateway timed out during {operation}") from e
        except httpx.RequestError as e:
            logger.error(f"Gateway {operation} request error: {e}")
            raise ExternalCollaboratorError(f"Payment gateway unreachable during {operation}") from e

        if response.status_code >= 400:
            logger.error(f"Gateway {operation} failed with {response.status_code}: {response.text[:500]}")
            raise ExternalCollaboratorError(
                f"Payment gateway rejected {operation}",
                {'statusCode': response.status_code}
            )
        return response.json()

    def create_order(self, amount: Decimal, currency: str, receipt: str, notes: Dict[str, Any]) -> str:
        """Create an order and return its id (the opaque order reference)."""
        order = self._request(
            'POST',
            '/orders',
            'create_order',
            json={
                'amount': to_minor_units(amount),
                'currency': currency,
                'receipt': receipt[:40],
                'notes': {k: str(v) for k, v in notes.items()},
            }
        )
        logger.info(f"Created gateway order {order['id']} for receipt {receipt}")
        return order['id']

    def fetch_order_payments(self, order_ref: str) -> List[Dict[str, Any]]:
        """Payments made against an order, newest last."""
        payload = self._request('GET', f'/orders/{order_ref}/payments', 'fetch_order_payments')
        return payload.get('items', [])

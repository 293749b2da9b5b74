"""
Verify Payment Handler.
POST /escrow/verify
Body: { "orderRef": "...", "paymentRef": "...", "signature": "..." }

Checkout callback relayed by the client after the gateway widget completes.
Safe to call more than once for the same payment. Only the hiring company
may relay the callback.
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.models import engagement_view, payment_view
from gigflow.services import get_escrow
from gigflow.utils import error_response, format_response, parse_body


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        body = parse_body(event)
        result = get_escrow().verify_callback(
            body.get('orderRef'),
            body.get('paymentRef'),
            body.get('signature'),
            company_id,
        )
        return format_response(200, {
            'verified': True,
            'duplicate': result['duplicate'],
            'payment': payment_view(result['payment']),
            'engagement': engagement_view(result['engagement']),
        })

    except Exception as e:
        return error_response(e)

"""
Create Escrow Intent Handler.
POST /engagements/{engagementId}/escrow
Body: { "amount": "500.00" }   (optional, defaults to the agreed amount)

Returns the gateway order the checkout widget needs. A gateway timeout comes
back as 504; calling again resumes the same payment.
"""
from gigflow.auth import require_user
from gigflow.config import config
from gigflow.logging import log_event
from gigflow.models import PaymentStatus, payment_view
from gigflow.services import get_escrow
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        body = parse_body(event)
        payment = get_escrow().create_intent(
            get_path_param(event, 'engagementId'),
            company_id,
            body.get('amount'),
        )
        if payment['status'] == PaymentStatus.VERIFIED:
            # Already paid; the call only finished activating the engagement
            return format_response(200, {'payment': payment_view(payment), 'checkout': None})
        return format_response(201, {
            'payment': payment_view(payment),
            'checkout': {
                'keyId': config.GATEWAY_KEY_ID,
                'orderRef': payment.get('gatewayOrderRef'),
                'currency': payment.get('currency'),
            },
        })

    except Exception as e:
        return error_response(e)

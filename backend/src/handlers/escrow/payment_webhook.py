"""
Payment Webhook Handler.
POST /escrow/webhook  (no Cognito authorizer; authenticated by signature)

Verifies X-Razorpay-Signature over the raw body. Events we do not act on are
acknowledged with 200 so the gateway does not keep redelivering them.
"""
from gigflow.logging import log_event
from gigflow.services import get_escrow
from gigflow.utils import error_response, format_response, get_header, raw_body

SIGNATURE_HEADER = 'X-Razorpay-Signature'


def handler(event, context):
    log_event(event)
    try:
        result = get_escrow().handle_webhook(raw_body(event), get_header(event, SIGNATURE_HEADER))
        return format_response(200, result)

    except Exception as e:
        return error_response(e)

"""
Cancel Channel Close Handler.
DELETE /engagements/{engagementId}/channel/close
Body: { "reason": "..." }   (optional)
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.services import get_channels
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        body = parse_body(event)
        get_channels().cancel_close(
            get_path_param(event, 'engagementId'),
            company_id,
            body.get('reason') or 'manual',
        )
        return format_response(200, {'message': 'Scheduled close cancelled'})

    except Exception as e:
        return error_response(e)

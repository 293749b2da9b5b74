"""
Schedule Channel Close Handler.
POST /engagements/{engagementId}/channel/close
Body: { "delayHours": 48 }
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
        channel = get_channels().schedule_close(
            get_path_param(event, 'engagementId'),
            company_id,
            body.get('delayHours'),
        )
        return format_response(200, {
            'message': 'Channel close scheduled',
            'scheduledCloseAt': channel.get('scheduledCloseAt'),
        })

    except Exception as e:
        return error_response(e)

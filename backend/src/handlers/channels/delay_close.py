"""
Delay Channel Close Handler.
PATCH /engagements/{engagementId}/channel/close
Body: { "additionalHours": 24 }   (optional, defaults to 7)

Either participant can push a pending close back, including the archive
close scheduled when an engagement completes.
"""
from gigflow.auth import require_user
from gigflow.channels import DEFAULT_DELAY_HOURS
from gigflow.logging import log_event
from gigflow.services import get_channels
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        user_id = require_user(event)
        body = parse_body(event)
        additional_hours = body.get('additionalHours')
        channel = get_channels().delay_close(
            get_path_param(event, 'engagementId'),
            user_id,
            DEFAULT_DELAY_HOURS if additional_hours is None else additional_hours,
        )
        return format_response(200, {
            'message': 'Scheduled close delayed',
            'scheduledCloseAt': channel.get('scheduledCloseAt'),
        })

    except Exception as e:
        return error_response(e)

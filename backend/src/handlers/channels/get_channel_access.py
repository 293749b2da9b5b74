"""
Get Channel Access Handler.
GET /engagements/{engagementId}/channel

Tells the messaging client whether the participant can read, write and
submit, and how long until any scheduled close.
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.services import get_channels
from gigflow.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)
    try:
        user_id = require_user(event)
        return format_response(200, get_channels().get_access(get_path_param(event, 'engagementId'), user_id))

    except Exception as e:
        return error_response(e)

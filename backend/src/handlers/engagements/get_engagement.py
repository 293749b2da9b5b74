"""
Get Engagement Handler.
GET /engagements/{engagementId}
"""
from gigflow import iterations
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.models import engagement_view
from gigflow.services import get_engagements
from gigflow.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)
    try:
        user_id = require_user(event)
        item = get_engagements().get_for_participant(get_path_param(event, 'engagementId'), user_id)

        view = engagement_view(item)
        view['iterations'] = iterations.summary(item)
        return format_response(200, view)

    except Exception as e:
        return error_response(e)

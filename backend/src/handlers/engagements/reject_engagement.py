"""
Reject Engagement Handler.
POST /engagements/{engagementId}/reject
Body: { "reason": "..." }

Allowed only before the first submission.
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.models import engagement_view
from gigflow.services import get_engagements
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        body = parse_body(event)
        item = get_engagements().reject(
            get_path_param(event, 'engagementId'),
            company_id,
            body.get('reason') or '',
        )
        return format_response(200, {'message': 'Engagement rejected', 'engagement': engagement_view(item)})

    except Exception as e:
        return error_response(e)

"""
Raise Dispute Handler.
POST /engagements/{engagementId}/dispute
Body: { "reason": "..." }

Candidate escalates an engagement whose iterations ran out. Allowed once at
least half of the iterations have been used.
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.models import engagement_view
from gigflow.services import get_engagements
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        candidate_id = require_user(event)
        body = parse_body(event)
        item = get_engagements().raise_dispute(
            get_path_param(event, 'engagementId'),
            candidate_id,
            body.get('reason') or '',
        )
        return format_response(200, {'message': 'Dispute raised', 'engagement': engagement_view(item)})

    except Exception as e:
        return error_response(e)

"""
List Engagements Handler.
GET /gigs/{gigId}/engagements

Company view of everyone hired on one of its gigs.
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.models import engagement_view
from gigflow.services import get_engagements
from gigflow.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        items = get_engagements().list_for_gig(get_path_param(event, 'gigId'), company_id)
        return format_response(200, {
            'engagements': [engagement_view(i) for i in items],
            'count': len(items),
        })

    except Exception as e:
        return error_response(e)

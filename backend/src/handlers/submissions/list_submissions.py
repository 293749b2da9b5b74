"""
List Submissions Handler.
GET /engagements/{engagementId}/submissions
"""
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.services import get_reviews
from gigflow.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)
    try:
        user_id = require_user(event)
        submissions = get_reviews().list_submissions(get_path_param(event, 'engagementId'), user_id)
        return format_response(200, {'submissions': submissions, 'count': len(submissions)})

    except Exception as e:
        return error_response(e)

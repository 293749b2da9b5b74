"""
Review Submission Handler.
POST /submissions/{submissionId}/review
Body: { "outcome": "approved" | "revision_requested" | "rejected", "feedback": "..." }
"""
from gigflow import iterations
from gigflow.auth import require_user
from gigflow.logging import log_event
from gigflow.models import engagement_view
from gigflow.services import get_reviews
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        body = parse_body(event)

        result = get_reviews().review(
            get_path_param(event, 'submissionId'),
            company_id,
            body.get('outcome'),
            body.get('feedback'),
        )
        engagement = result['engagement']
        return format_response(200, {
            'submission': result['submission'],
            'engagement': engagement_view(engagement),
            'iterations': iterations.summary(engagement),
        })

    except Exception as e:
        return error_response(e)

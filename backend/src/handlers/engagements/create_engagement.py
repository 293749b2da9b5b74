"""
Create Engagement Handler.
POST /gigs/{gigId}/engagements
Body: { "candidateId": "...", "totalIterations": 3, "agreedAmount": "500.00" }

Records the company's decision to hire; the engagement stays pending until
escrow is funded.
"""
from gigflow.auth import is_company, require_user
from gigflow.errors import NotAuthorized, ValidationError
from gigflow.logging import log_event
from gigflow.models import engagement_view
from gigflow.services import get_engagements
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)
    try:
        company_id = require_user(event)
        if not is_company(event):
            raise NotAuthorized('Only companies can hire candidates')

        gig_id = get_path_param(event, 'gigId')
        body = parse_body(event)
        candidate_id = body.get('candidateId')
        if not gig_id or not candidate_id:
            raise ValidationError('gigId and candidateId are required')

        item = get_engagements().create(
            gig_id=gig_id,
            company_id=company_id,
            candidate_id=candidate_id,
            total_iterations=body.get('totalIterations'),
            agreed_amount=body.get('agreedAmount'),
        )
        return format_response(201, {
            'message': 'Engagement created; fund escrow to start work',
            'engagement': engagement_view(item),
        })

    except Exception as e:
        return error_response(e)

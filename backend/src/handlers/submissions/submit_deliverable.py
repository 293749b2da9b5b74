"""
Submit Deliverable Handler.
POST /engagements/{engagementId}/submissions
Body: {
    "description": "...",
    "files": [{ "name": "design.pdf", "contentType": "application/pdf", "data": "<base64>" }]
}
"""
import base64
import binascii

from gigflow.auth import require_user
from gigflow.errors import ValidationError
from gigflow.logging import log_event
from gigflow.services import get_reviews
from gigflow.utils import error_response, format_response, get_path_param, parse_body


def decode_files(raw_files) -> list:
    """Turn base64 file payloads into the dicts the review machine expects."""
    if not isinstance(raw_files, list):
        raise ValidationError('files must be a list')
    files = []
    for f in raw_files:
        if not isinstance(f, dict):
            raise ValidationError('Each file must be an object')
        try:
            content = base64.b64decode(f.get('data') or '', validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(f"File {f.get('name')} is not valid base64")
        files.append({
            'name': f.get('name'),
            'contentType': f.get('contentType'),
            'content': content,
        })
    return files


def handler(event, context):
    log_event(event)
    try:
        candidate_id = require_user(event)
        body = parse_body(event)

        submission = get_reviews().submit(
            get_path_param(event, 'engagementId'),
            candidate_id,
            decode_files(body.get('files')),
            body.get('description') or '',
        )
        return format_response(201, {
            'message': 'Deliverable submitted for review',
            'submission': submission,
        })

    except Exception as e:
        return error_response(e)

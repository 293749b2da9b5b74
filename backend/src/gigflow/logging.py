"""
Logging for the engagement Lambdas.

One `gigflow` logger shared by engines and handlers. Handlers call
`log_event` first thing; it records where the request came from but never the
body or headers, which carry signatures, payment refs and file contents.
"""
import json
import logging

from .config import config

logger = logging.getLogger('gigflow')
logger.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    logger.addHandler(handler)


def event_summary(event: dict) -> dict:
    """Routing facts of an API Gateway or EventBridge event."""
    context = event.get('requestContext') or {}
    if context:
        claims = (context.get('authorizer') or {}).get('claims') or {}
        return {
            'requestId': context.get('requestId'),
            'method': event.get('httpMethod'),
            'resource': event.get('resource'),
            'pathParameters': event.get('pathParameters'),
            'caller': claims.get('sub'),
        }
    # Scheduled invocations
    return {
        'source': event.get('source'),
        'detailType': event.get('detail-type'),
        'time': event.get('time'),
    }


def log_event(event: dict) -> None:
    try:
        logger.info(f"Lambda event: {json.dumps(event_summary(event), default=str)}")
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not log event: {e}")

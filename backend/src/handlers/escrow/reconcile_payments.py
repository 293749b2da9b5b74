"""
Reconcile Payments Handler.
Triggered by EventBridge every few minutes to settle payments whose callback
and webhook never arrived.
"""
from gigflow.logging import logger
from gigflow.services import get_escrow


def handler(event, context):
    """Scheduled handler; returns the reconciliation summary."""
    logger.info('Running escrow reconciliation...')
    minutes = (event or {}).get('olderThanMinutes')
    return get_escrow().reconcile(int(minutes) if minutes is not None else None)

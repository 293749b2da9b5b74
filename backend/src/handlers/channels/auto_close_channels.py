"""
Auto-Close Channels Handler.
Triggered by EventBridge (every 15 minutes) to warn participants about
upcoming closes and to close channels whose scheduled time has passed.
"""
from gigflow.logging import logger
from gigflow.services import get_channels


def handler(event, context):
    """Scheduled handler: sends due warnings, then executes due closes."""
    logger.info('Running channel auto-close check...')
    gate = get_channels()
    warned = gate.send_close_warnings()
    summary = gate.process_due_closes()
    summary['warned'] = warned
    return summary

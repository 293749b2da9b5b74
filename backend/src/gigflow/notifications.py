"""
Notification collaborator.

Notifications are fire-and-forget: events are enqueued to SQS for the
delivery service (email/push templates live there). A failure here is logged
and swallowed so it can never roll back the transition that triggered it.
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

import boto3

from .config import config
from .logging import logger


class Notifier:
    """Publishes notification events to the notifications queue."""

    def __init__(self, sqs_client=None, queue_url: str = None):
        self.sqs = sqs_client or boto3.client('sqs', region_name=config.AWS_REGION)
        self.queue_url = queue_url if queue_url is not None else config.NOTIFICATIONS_QUEUE_URL

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> bool:
        """
        Enqueue a notification for one user.

        Returns:
            True if the event was queued, False otherwise (never raises)
        """
        if not self.queue_url:
            logger.info(f"No NOTIFICATIONS_QUEUE_URL configured, dropping {kind} for {user_id}")
            return False

        message = {
            'notificationId': str(uuid.uuid4()),
            'userId': user_id,
            'kind': kind,
            'payload': payload,
            'createdAt': datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.sqs.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(message, default=str)
            )
            logger.info(f"Queued {kind} notification for {user_id}")
            return True
        except Exception as e:
            logger.warning(f"Notification {kind} for {user_id} failed (non-critical): {e}")
            return False

    def notify_many(self, user_ids: List[str], kind: str, payload: Dict[str, Any]) -> int:
        """Notify several users; returns how many events were queued."""
        return sum(1 for user_id in user_ids if self.notify(user_id, kind, payload))


class RecordingNotifier(Notifier):
    """Keeps notifications in memory instead of queueing them (local runs)."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, user_id, kind, payload):
        self.sent.append({'userId': user_id, 'kind': kind, 'payload': payload})
        return True

    def kinds_for(self, user_id: str) -> List[str]:
        return [n['kind'] for n in self.sent if n['userId'] == user_id]

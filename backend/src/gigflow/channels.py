"""
Channel access gate.

Each active engagement owns one communication channel between the company and
the candidate. Access is a pure function of engagement state plus any
scheduled close; the stored `accessState` follows it through `sync`, which
runs after every committed engagement transition.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .config import config
from .errors import ConcurrentModification, InvalidTransition, NotAuthorized, NotFound, ValidationError
from .logging import logger
from .models import (
    AccessState,
    CloseReason,
    EngagementEvent,
    EngagementStatus,
    NotificationKind,
    new_channel_item,
    normalize_status,
)
from .notifications import Notifier
from .store import CHANNELS, ENGAGEMENTS, AtMost, ConditionFailed, Store
from .utils import parse_timestamp, to_timestamp, utc_now

MIN_CLOSE_DELAY_HOURS = 1
MAX_CLOSE_DELAY_HOURS = 8760  # one year
DEFAULT_DELAY_HOURS = 7

SYNC_ATTEMPTS = 3

TERMINAL_CLOSE_REASONS = {
    EngagementStatus.COMPLETED: CloseReason.ENGAGEMENT_COMPLETED,
    EngagementStatus.REJECTED: CloseReason.ENGAGEMENT_REJECTED,
    EngagementStatus.EXHAUSTED: CloseReason.ITERATIONS_EXHAUSTED,
    EngagementStatus.DISPUTED: CloseReason.DISPUTE_RAISED,
}


def parse_hours(value: Any, field: str) -> int:
    """Whole number of hours within the close delay bounds."""
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a whole number of hours')
    try:
        hours = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a whole number of hours')
    if not MIN_CLOSE_DELAY_HOURS <= hours <= MAX_CLOSE_DELAY_HOURS:
        raise ValidationError(
            f'{field} must be between {MIN_CLOSE_DELAY_HOURS} and {MAX_CLOSE_DELAY_HOURS}',
            {field: hours}
        )
    return hours


class ChannelAccess(NamedTuple):
    state: str
    close_reason: Optional[str]
    can_read: bool
    can_write: bool
    can_submit: bool


def compute_access(
    status: str,
    awaiting_review: bool,
    scheduled_close_at: Optional[datetime],
    now: datetime,
) -> ChannelAccess:
    """
    Derive channel access from engagement state.

    Working engagements get an open channel unless a scheduled close has
    passed. Everything else is read-only. Reading is always allowed so the
    history stays available.
    """
    status = normalize_status(status)
    close_due = scheduled_close_at is not None and now >= scheduled_close_at

    if status in EngagementStatus.WORKING:
        if close_due:
            return ChannelAccess(AccessState.READ_ONLY, CloseReason.SCHEDULED_CLOSE, True, False, False)
        return ChannelAccess(AccessState.OPEN, None, True, True, not awaiting_review)

    if status == EngagementStatus.COMPLETED and close_due:
        return ChannelAccess(AccessState.READ_ONLY, CloseReason.APPROVED_AND_ARCHIVED, True, False, False)

    reason = TERMINAL_CLOSE_REASONS.get(status, CloseReason.AWAITING_ESCROW)
    return ChannelAccess(AccessState.READ_ONLY, reason, True, False, False)


def time_remaining(scheduled_close_at: Optional[datetime], now: datetime) -> Optional[Dict[str, Any]]:
    """Countdown until a scheduled close, for display."""
    if scheduled_close_at is None:
        return None
    seconds = int((scheduled_close_at - now).total_seconds())
    if seconds <= 0:
        return {'expired': True, 'days': 0, 'hours': 0, 'minutes': 0, 'totalMinutes': 0}
    total_minutes = seconds // 60
    return {
        'expired': False,
        'days': total_minutes // (24 * 60),
        'hours': (total_minutes // 60) % 24,
        'minutes': total_minutes % 60,
        'totalMinutes': total_minutes,
    }


class ChannelAccessGate:
    """Keeps stored channel access in line with engagement state."""

    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        auto_close_delay_hours: int = None,
        warning_minutes: int = None,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.auto_close_delay_hours = auto_close_delay_hours or config.AUTO_CLOSE_DELAY_HOURS
        self.warning_minutes = warning_minutes or config.CLOSE_WARNING_MINUTES

    # --- Engagement listener ------------------------------------------------

    def on_transition(self, item: Dict[str, Any], event: str) -> None:
        """Subscribed to the engagement state machine."""
        if event == EngagementEvent.ACCEPT:
            self.open_channel(item)
        else:
            self.sync(item)

    def open_channel(self, engagement: Dict[str, Any]) -> Dict[str, Any]:
        """Create the channel for a freshly activated engagement (idempotent)."""
        channel = new_channel_item(engagement, to_timestamp(self.clock()))
        try:
            self.store.put_new(CHANNELS, channel)
        except ConditionFailed:
            logger.info(f"Channel for {engagement['engagementId']} already exists")
            return self.store.get(CHANNELS, engagement['engagementId'])
        logger.info(f"Opened channel for engagement {engagement['engagementId']}")
        return channel

    def sync(self, engagement: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Bring the stored channel in line with the engagement.

        Moves an open channel to read-only when the engagement leaves the
        working states, and schedules the archive close after completion.
        Safe to call repeatedly.
        """
        engagement_id = engagement['engagementId']
        for _ in range(SYNC_ATTEMPTS):
            channel = self.store.get(CHANNELS, engagement_id)
            if channel is None:
                if normalize_status(engagement['status']) not in EngagementStatus.WORKING:
                    return None
                channel = self.open_channel(engagement)

            changes, history = self._plan_sync(engagement, channel)
            if not changes:
                return channel
            changes['version'] = int(channel.get('version') or 0) + 1
            changes['updatedAt'] = to_timestamp(self.clock())
            try:
                return self.store.update(
                    CHANNELS,
                    engagement_id,
                    changes,
                    expected={'version': channel.get('version')},
                    append={'closeHistory': history} if history else None,
                )
            except ConditionFailed:
                logger.info(f"Channel {engagement_id} changed during sync, re-reading")

        raise ConcurrentModification('Channel kept changing during sync', {'engagementId': engagement_id})

    def _plan_sync(self, engagement: Dict[str, Any], channel: Dict[str, Any]):
        now = self.clock()
        status = normalize_status(engagement['status'])
        access = compute_access(
            status,
            bool(engagement.get('awaitingReview')),
            parse_timestamp(channel.get('scheduledCloseAt')),
            now,
        )
        changes: Dict[str, Any] = {}
        history: List[Dict[str, Any]] = []

        if access.state == AccessState.READ_ONLY and channel['accessState'] == AccessState.OPEN:
            changes['accessState'] = AccessState.READ_ONLY
            changes['closeReason'] = access.close_reason
            changes['closedAt'] = to_timestamp(now)

        if status == EngagementStatus.COMPLETED and not channel.get('scheduledCloseAt') and not channel.get('archivedAt'):
            completed_at = parse_timestamp(engagement.get('completedAt')) or now
            close_at = to_timestamp(completed_at + timedelta(hours=self.auto_close_delay_hours))
            changes['scheduledCloseAt'] = close_at
            changes['scheduledCloseReason'] = CloseReason.APPROVED_AND_ARCHIVED
            changes['closeWarningsSent'] = 0
            history.append({
                'action': 'scheduled',
                'at': to_timestamp(now),
                'closeAt': close_at,
                'reason': CloseReason.APPROVED_AND_ARCHIVED,
            })

        return changes, history

    # --- Scheduled closes ---------------------------------------------------

    def schedule_close(self, engagement_id: str, company_id: str, delay_hours: Any) -> Dict[str, Any]:
        """Company asks for the open channel to close after `delay_hours`."""
        delay = parse_hours(delay_hours, 'delayHours')

        engagement = self._engagement(engagement_id)
        if engagement['companyId'] != company_id:
            raise NotAuthorized('Only the hiring company can schedule a channel close')
        channel = self._channel(engagement_id)
        if channel['accessState'] != AccessState.OPEN:
            raise InvalidTransition('Channel is already read-only', details={'closeReason': channel.get('closeReason')})

        now = self.clock()
        close_at = to_timestamp(now + timedelta(hours=delay))
        try:
            updated = self.store.update(
                CHANNELS,
                engagement_id,
                {
                    'scheduledCloseAt': close_at,
                    'scheduledCloseReason': CloseReason.SCHEDULED_CLOSE,
                    'closeWarningsSent': 0,
                    'version': int(channel.get('version') or 0) + 1,
                    'updatedAt': to_timestamp(now),
                },
                expected={'accessState': AccessState.OPEN, 'version': channel.get('version')},
                append={'closeHistory': [{
                    'action': 'scheduled',
                    'at': to_timestamp(now),
                    'closeAt': close_at,
                    'delayHours': delay,
                    'reason': CloseReason.SCHEDULED_CLOSE,
                }]},
            )
        except ConditionFailed:
            raise ConcurrentModification('Channel was modified concurrently; reload and retry',
                                         {'engagementId': engagement_id})

        logger.info(f"Scheduled close of channel {engagement_id} at {close_at}")
        return updated

    def cancel_close(self, engagement_id: str, company_id: str, reason: str = 'manual') -> Dict[str, Any]:
        """
        Cancel a pending close.

        The write is conditional on the scheduled time that was read, so a
        cancel racing the close job either wins cleanly or loses with
        ConcurrentModification.
        """
        engagement = self._engagement(engagement_id)
        if engagement['companyId'] != company_id:
            raise NotAuthorized('Only the hiring company can cancel a channel close')
        channel = self._channel(engagement_id)
        if channel['accessState'] != AccessState.OPEN:
            raise InvalidTransition('Channel is already read-only', details={'closeReason': channel.get('closeReason')})
        scheduled = channel.get('scheduledCloseAt')
        if not scheduled:
            raise InvalidTransition('No close is scheduled for this channel')

        now = to_timestamp(self.clock())
        try:
            updated = self.store.update(
                CHANNELS,
                engagement_id,
                {
                    'scheduledCloseAt': None,
                    'scheduledCloseReason': None,
                    'closeWarningsSent': 0,
                    'version': int(channel.get('version') or 0) + 1,
                    'updatedAt': now,
                },
                expected={'accessState': AccessState.OPEN, 'scheduledCloseAt': scheduled},
                append={'closeHistory': [{
                    'action': 'cancelled',
                    'at': now,
                    'closeAt': scheduled,
                    'reason': reason or 'manual',
                }]},
            )
        except ConditionFailed:
            raise ConcurrentModification('Channel close already executed or changed; reload',
                                         {'engagementId': engagement_id})

        logger.info(f"Cancelled scheduled close of channel {engagement_id}")
        return updated

    def delay_close(
        self, engagement_id: str, user_id: str, additional_hours: Any = DEFAULT_DELAY_HOURS
    ) -> Dict[str, Any]:
        """
        Push a pending close back by `additional_hours`.

        Either participant may ask, including on a read-only channel waiting
        for its archive close. Warnings are re-armed for the new time.
        """
        hours = parse_hours(additional_hours, 'additionalHours')
        engagement = self._engagement(engagement_id)
        if user_id not in (engagement['companyId'], engagement['candidateId']):
            raise NotAuthorized('Not a participant in this engagement')
        channel = self._channel(engagement_id)
        if channel.get('archivedAt'):
            raise InvalidTransition('Channel is already archived', details={'closeReason': channel.get('closeReason')})
        scheduled = channel.get('scheduledCloseAt')
        if not scheduled:
            raise InvalidTransition('No close is scheduled for this channel')

        now = self.clock()
        if parse_timestamp(scheduled) <= now:
            raise InvalidTransition('Scheduled close is already due', details={'scheduledCloseAt': scheduled})

        close_at = to_timestamp(parse_timestamp(scheduled) + timedelta(hours=hours))
        try:
            updated = self.store.update(
                CHANNELS,
                engagement_id,
                {
                    'scheduledCloseAt': close_at,
                    'closeWarningsSent': 0,
                    'version': int(channel.get('version') or 0) + 1,
                    'updatedAt': to_timestamp(now),
                },
                expected={'scheduledCloseAt': scheduled},
                append={'closeHistory': [{
                    'action': 'delayed',
                    'at': to_timestamp(now),
                    'closeAt': close_at,
                    'delayHours': hours,
                    'requestedBy': user_id,
                }]},
            )
        except ConditionFailed:
            raise ConcurrentModification('Channel close already executed or changed; reload',
                                         {'engagementId': engagement_id})

        logger.info(f"Delayed close of channel {engagement_id} to {close_at}")
        return updated

    def process_due_closes(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Close every channel whose scheduled close time has passed."""
        now = now or self.clock()
        due = self.store.scan(CHANNELS, {'scheduledCloseAt': AtMost(to_timestamp(now))})
        closed = 0
        skipped = 0

        for channel in due:
            if self._close_due(channel, now):
                closed += 1
            else:
                skipped += 1

        logger.info(f"Processed due closes: checked={len(due)} closed={closed} skipped={skipped}")
        return {'checked': len(due), 'closed': closed, 'skipped': skipped}

    def _close_due(self, channel: Dict[str, Any], now: datetime) -> bool:
        engagement_id = channel['engagementId']
        engagement = self.store.get(ENGAGEMENTS, engagement_id)
        status = normalize_status(engagement['status']) if engagement else None
        reason = (
            CloseReason.APPROVED_AND_ARCHIVED
            if status == EngagementStatus.COMPLETED
            else CloseReason.SCHEDULED_CLOSE
        )
        timestamp = to_timestamp(now)
        try:
            self.store.update(
                CHANNELS,
                engagement_id,
                {
                    'accessState': AccessState.READ_ONLY,
                    'closeReason': reason,
                    'closedAt': channel.get('closedAt') or timestamp,
                    'archivedAt': timestamp,
                    'scheduledCloseAt': None,
                    'scheduledCloseReason': None,
                    'version': int(channel.get('version') or 0) + 1,
                    'updatedAt': timestamp,
                },
                expected={'scheduledCloseAt': channel['scheduledCloseAt']},
                append={'closeHistory': [{
                    'action': 'executed',
                    'at': timestamp,
                    'closeAt': channel['scheduledCloseAt'],
                    'reason': reason,
                }]},
            )
        except ConditionFailed:
            logger.info(f"Close of channel {engagement_id} was cancelled or already executed")
            return False

        logger.info(f"Closed channel {engagement_id} ({reason})")
        self.notifier.notify_many(channel.get('participants', []), NotificationKind.CHANNEL_ARCHIVED, {
            'engagementId': engagement_id,
            'closeReason': reason,
        })
        return True

    def send_close_warnings(self, now: Optional[datetime] = None) -> int:
        """Warn participants once when a scheduled close is near."""
        now = now or self.clock()
        horizon = to_timestamp(now + timedelta(minutes=self.warning_minutes))
        candidates = self.store.scan(CHANNELS, {
            'scheduledCloseAt': AtMost(horizon),
            'closeWarningsSent': 0,
        })
        sent = 0

        for channel in candidates:
            close_at = parse_timestamp(channel['scheduledCloseAt'])
            if close_at is None or close_at <= now:
                continue
            try:
                self.store.update(
                    CHANNELS,
                    channel['engagementId'],
                    {'closeWarningsSent': 1},
                    expected={'closeWarningsSent': 0, 'scheduledCloseAt': channel['scheduledCloseAt']},
                )
            except ConditionFailed:
                continue
            self.notifier.notify_many(channel.get('participants', []), NotificationKind.CHANNEL_CLOSE_WARNING, {
                'engagementId': channel['engagementId'],
                'scheduledCloseAt': channel['scheduledCloseAt'],
                'timeRemaining': time_remaining(close_at, now),
            })
            sent += 1

        logger.info(f"Sent {sent} channel close warnings")
        return sent

    # --- Reads --------------------------------------------------------------

    def get_access(self, engagement_id: str, user_id: str) -> Dict[str, Any]:
        """Effective access for a participant, honouring elapsed schedules."""
        engagement = self._engagement(engagement_id)
        if user_id not in (engagement['companyId'], engagement['candidateId']):
            raise NotAuthorized('Not a participant in this engagement')

        now = self.clock()
        channel = self.store.get(CHANNELS, engagement_id)
        scheduled = parse_timestamp(channel.get('scheduledCloseAt')) if channel else None
        access = compute_access(engagement['status'], bool(engagement.get('awaitingReview')), scheduled, now)

        if channel and channel.get('archivedAt'):
            # An executed close is final even if the engagement state would allow more
            access = ChannelAccess(AccessState.READ_ONLY, channel.get('closeReason'), True, False, False)

        return {
            'engagementId': engagement_id,
            'channelExists': channel is not None,
            'accessState': access.state,
            'closeReason': access.close_reason,
            'canRead': access.can_read,
            'canWrite': access.can_write,
            'canSubmit': access.can_submit,
            'scheduledCloseAt': channel.get('scheduledCloseAt') if channel else None,
            'timeRemaining': time_remaining(scheduled, now),
            'archivedAt': channel.get('archivedAt') if channel else None,
        }

    def _engagement(self, engagement_id: str) -> Dict[str, Any]:
        engagement = self.store.get(ENGAGEMENTS, engagement_id)
        if not engagement:
            raise NotFound('Engagement not found', {'engagementId': engagement_id})
        return engagement

    def _channel(self, engagement_id: str) -> Dict[str, Any]:
        channel = self.store.get(CHANNELS, engagement_id)
        if not channel:
            raise NotFound('Channel not found', {'engagementId': engagement_id})
        return channel

"""
Deliverable review state machine.

A candidate submits one version per iteration; the company reviews it exactly
once. The submission record and the engagement transition it causes are
written in one transaction so neither can exist without the other.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import iterations
from .engagements import EngagementStateMachine, apply_update
from .errors import (
    ConcurrentModification,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from .logging import logger
from .models import (
    EngagementEvent,
    EngagementStatus,
    ReviewOutcome,
    new_submission_item,
    normalize_status,
)
from .storage import DeliverableStorage
from .store import SUBMISSIONS, ConditionFailed, Put, Store, Update
from .utils import to_timestamp, utc_now

MAX_FILES = 10
MAX_FILE_SIZE = 25 * 1024 * 1024  # 25 MB
MAX_DESCRIPTION_LENGTH = 2000
MAX_FEEDBACK_LENGTH = 1000


def validate_files(files: Any) -> List[Dict[str, Any]]:
    """
    Check uploaded files before anything is stored.

    Each file is a dict with `name`, `content` (bytes) and `contentType`.
    """
    if not isinstance(files, list) or not files:
        raise ValidationError('At least one file is required')
    if len(files) > MAX_FILES:
        raise ValidationError(f'At most {MAX_FILES} files can be submitted per iteration')

    for f in files:
        if not isinstance(f, dict) or not f.get('name'):
            raise ValidationError('Every file needs a name')
        content = f.get('content')
        if not isinstance(content, (bytes, bytearray)) or not content:
            raise ValidationError(f"File {f['name']} is empty")
        if len(content) > MAX_FILE_SIZE:
            raise ValidationError(
                f"File {f['name']} exceeds the {MAX_FILE_SIZE // (1024 * 1024)} MB limit",
                {'size': len(content)}
            )
    return files


class ReviewStateMachine:
    """Creates submissions and records their review outcomes."""

    def __init__(
        self,
        store: Store,
        engagements: EngagementStateMachine,
        storage: DeliverableStorage,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.engagements = engagements
        self.storage = storage
        self.clock = clock

    def get(self, submission_id: str) -> Dict[str, Any]:
        submission = self.store.get(SUBMISSIONS, submission_id)
        if not submission:
            raise NotFound('Submission not found', {'submissionId': submission_id})
        return submission

    def submit(
        self,
        engagement_id: str,
        candidate_id: str,
        files: List[Dict[str, Any]],
        description: str,
    ) -> Dict[str, Any]:
        """
        Submit a new version of the deliverable.

        Files are stored before any state changes, so a storage failure leaves
        the engagement untouched. Budget is not consumed here.
        """
        if not description or not description.strip():
            raise ValidationError('A description is required')
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f'description must be at most {MAX_DESCRIPTION_LENGTH} characters')
        validate_files(files)

        item = self.engagements.get(engagement_id)
        if item['candidateId'] != candidate_id:
            raise NotAuthorized('Only the engaged candidate can submit deliverables')
        self._check_can_submit(item)

        stored = []
        for f in files:
            content_type = f.get('contentType') or 'application/octet-stream'
            url = self.storage.store(bytes(f['content']), content_type, engagement_id)
            stored.append({
                'name': f['name'],
                'url': url,
                'contentType': content_type,
                'size': len(f['content']),
            })

        submission = new_submission_item(
            item,
            iterations.next_iteration_number(item),
            stored,
            description.strip(),
            to_timestamp(self.clock()),
        )
        update = self.engagements.plan_submit(item, submission['submissionId'])
        try:
            self.store.transact([Put(SUBMISSIONS, submission), update])
        except ConditionFailed:
            logger.warning(f"Submit raced on engagement {engagement_id}")
            raise ConcurrentModification(
                'Engagement was modified concurrently; reload and retry',
                {'engagementId': engagement_id, 'event': EngagementEvent.SUBMIT}
            )

        logger.info(
            f"Submission {submission['submissionId']} (iteration {submission['iterationNumber']}) "
            f"for engagement {engagement_id}"
        )
        self.engagements.published(apply_update(item, update), EngagementEvent.SUBMIT)
        return submission

    def review(
        self,
        submission_id: str,
        company_id: str,
        outcome: str,
        feedback: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record the company's verdict on a pending submission.

        Returns:
            dict with the reviewed `submission` and the resulting `engagement`
        """
        if outcome not in ReviewOutcome.FINAL:
            raise ValidationError(
                f"outcome must be one of {sorted(ReviewOutcome.FINAL)}",
                {'outcome': outcome}
            )
        feedback = (feedback or '').strip()
        if outcome == ReviewOutcome.REVISION_REQUESTED and not feedback:
            raise ValidationError('Feedback is required for revision requests')
        if len(feedback) > MAX_FEEDBACK_LENGTH:
            raise ValidationError(f'feedback must be at most {MAX_FEEDBACK_LENGTH} characters')

        submission = self.get(submission_id)
        item = self.engagements.get(submission['engagementId'])
        if item['companyId'] != company_id:
            raise NotAuthorized('Only the hiring company can review submissions')

        if submission['reviewOutcome'] != ReviewOutcome.PENDING:
            raise InvalidTransition(
                'Submission has already been reviewed',
                details={'reviewOutcome': submission['reviewOutcome']}
            )
        if item.get('currentSubmissionId') != submission_id or not item.get('awaitingReview'):
            raise InvalidTransition(
                'Submission is not the one awaiting review',
                current_status=item['status'],
                details={'currentSubmissionId': item.get('currentSubmissionId')}
            )

        event, engagement_update = self.engagements.plan_review(item, outcome)
        timestamp = to_timestamp(self.clock())
        submission_update = Update(
            SUBMISSIONS,
            submission_id,
            {
                'reviewOutcome': outcome,
                'feedback': feedback or None,
                'reviewedAt': timestamp,
                'updatedAt': timestamp,
            },
            {'reviewOutcome': ReviewOutcome.PENDING},
        )
        try:
            self.store.transact([submission_update, engagement_update])
        except ConditionFailed:
            logger.warning(f"Review raced on submission {submission_id}")
            raise ConcurrentModification(
                'Submission or engagement was modified concurrently; reload and retry',
                {'submissionId': submission_id, 'event': event}
            )

        engagement = apply_update(item, engagement_update)
        logger.info(f"Submission {submission_id} reviewed as {outcome}; engagement now {engagement['status']}")
        self.engagements.published(engagement, event)
        return {
            'submission': apply_update(submission, submission_update),
            'engagement': engagement,
        }

    def list_submissions(self, engagement_id: str, user_id: str) -> List[Dict[str, Any]]:
        """All versions of the deliverable, oldest first, with signed file URLs."""
        self.engagements.get_for_participant(engagement_id, user_id)
        submissions = self.store.query(SUBMISSIONS, 'engagementId', engagement_id)
        submissions.sort(key=lambda s: (int(s['iterationNumber']), s.get('submittedAt') or ''))
        for submission in submissions:
            for f in submission.get('files', []):
                f['url'] = self.storage.presigned_url(f['url'])
        return submissions

    @staticmethod
    def _check_can_submit(item: Dict[str, Any]) -> None:
        status = normalize_status(item['status'])
        if status == EngagementStatus.EXHAUSTED:
            raise iterations.exhausted_error(item)
        if status not in EngagementStatus.WORKING:
            raise InvalidTransition(
                f'Cannot submit while the engagement is {status}',
                current_status=status,
                event=EngagementEvent.SUBMIT,
            )
        if not iterations.can_submit(item):
            raise iterations.exhausted_error(item)
        if item.get('awaitingReview'):
            raise InvalidTransition(
                'A submission is already awaiting review',
                current_status=status,
                event=EngagementEvent.SUBMIT,
                details={'currentSubmissionId': item.get('currentSubmissionId')},
            )

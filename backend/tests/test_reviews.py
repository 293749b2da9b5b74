"""
Tests for deliverable submission and review.
"""
import threading

import pytest

from conftest import CANDIDATE, COMPANY, KEY_SECRET, WEBHOOK_SECRET, fund, sample_files, submit
from gigflow.channels import ChannelAccessGate
from gigflow.engagements import EngagementStateMachine
from gigflow.entitlements import AllowAllEntitlements
from gigflow.errors import (
    ConcurrentModification,
    ExternalCollaboratorError,
    InvalidTransition,
    NoIterationsRemaining,
    NotAuthorized,
    ValidationError,
)
from gigflow.escrow import EscrowCoordinator
from gigflow.models import AccessState, CloseReason, EngagementStatus, NotificationKind, ReviewOutcome
from gigflow.reviews import MAX_FILE_SIZE, ReviewStateMachine
from gigflow.store import CHANNELS, SUBMISSIONS, InMemoryStore, Update


class TestSubmit:
    """Tests for submitting a deliverable version."""

    def test_submit_records_pending_submission(self, reviews, store, storage, active_engagement, notifier):
        submission = submit(reviews, active_engagement['engagementId'], 'First draft')

        assert submission['iterationNumber'] == 1
        assert submission['reviewOutcome'] == ReviewOutcome.PENDING
        assert submission['files'][0]['name'] == 'design-v0.pdf'
        storage.store.assert_called_once()

        engagement = reviews.engagements.get(active_engagement['engagementId'])
        assert engagement['currentSubmissionId'] == submission['submissionId']
        assert engagement['awaitingReview'] is True
        # Budget is spent on review, not on submit
        assert engagement['usedIterations'] == 0
        assert NotificationKind.SUBMISSION_RECEIVED in notifier.kinds_for(COMPANY)

    def test_only_one_submission_awaiting_review(self, reviews, storage, active_engagement):
        submit(reviews, active_engagement['engagementId'])
        storage.store.reset_mock()

        with pytest.raises(InvalidTransition):
            submit(reviews, active_engagement['engagementId'])
        storage.store.assert_not_called()

    def test_pending_engagement_cannot_submit(self, reviews, pending_engagement):
        with pytest.raises(InvalidTransition):
            submit(reviews, pending_engagement['engagementId'])

    def test_only_candidate_submits(self, reviews, active_engagement):
        with pytest.raises(NotAuthorized):
            reviews.submit(active_engagement['engagementId'], COMPANY, sample_files(), 'Mine now')

    @pytest.mark.parametrize('files', [
        [],
        sample_files(11),
        [{'name': 'empty.txt', 'content': b''}],
        [{'name': 'huge.bin', 'content': b'x' * (MAX_FILE_SIZE + 1)}],
    ])
    def test_file_validation(self, reviews, active_engagement, files):
        with pytest.raises(ValidationError):
            reviews.submit(active_engagement['engagementId'], CANDIDATE, files, 'Files')

    def test_description_limits(self, reviews, active_engagement):
        with pytest.raises(ValidationError):
            reviews.submit(active_engagement['engagementId'], CANDIDATE, sample_files(), '')
        with pytest.raises(ValidationError):
            reviews.submit(active_engagement['engagementId'], CANDIDATE, sample_files(), 'x' * 2001)

    def test_storage_failure_leaves_engagement_untouched(self, reviews, store, storage, active_engagement):
        storage.store.side_effect = ExternalCollaboratorError('S3 unavailable')

        with pytest.raises(ExternalCollaboratorError):
            submit(reviews, active_engagement['engagementId'])

        engagement = reviews.engagements.get(active_engagement['engagementId'])
        assert engagement['version'] == active_engagement['version']
        assert store.query(SUBMISSIONS, 'engagementId', active_engagement['engagementId']) == []


class TestReview:
    """Tests for recording review outcomes."""

    def test_revision_request_spends_an_iteration(self, reviews, active_engagement, notifier):
        submission = submit(reviews, active_engagement['engagementId'])

        result = reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'Bigger logo')

        assert result['submission']['reviewOutcome'] == ReviewOutcome.REVISION_REQUESTED
        assert result['submission']['feedback'] == 'Bigger logo'
        engagement = result['engagement']
        assert engagement['status'] == EngagementStatus.REVISION_REQUESTED
        assert engagement['usedIterations'] == 1
        assert engagement['remainingIterations'] == 2
        assert engagement['awaitingReview'] is False
        assert NotificationKind.REVISION_REQUESTED in notifier.kinds_for(CANDIDATE)

    def test_feedback_required_for_revision(self, reviews, active_engagement):
        submission = submit(reviews, active_engagement['engagementId'])

        with pytest.raises(ValidationError):
            reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, '  ')
        with pytest.raises(ValidationError):
            reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'x' * 1001)

    def test_unknown_outcome(self, reviews, active_engagement):
        submission = submit(reviews, active_engagement['engagementId'])
        with pytest.raises(ValidationError):
            reviews.review(submission['submissionId'], COMPANY, 'maybe', 'Hmm')

    def test_submission_reviewed_once(self, reviews, active_engagement):
        submission = submit(reviews, active_engagement['engagementId'])
        reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'Again')

        with pytest.raises(InvalidTransition):
            reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.APPROVED)

    def test_only_company_reviews(self, reviews, active_engagement):
        submission = submit(reviews, active_engagement['engagementId'])
        with pytest.raises(NotAuthorized):
            reviews.review(submission['submissionId'], CANDIDATE, ReviewOutcome.APPROVED)

    def test_rejected_outcome_rejects_engagement(self, reviews, store, active_engagement):
        submission = submit(reviews, active_engagement['engagementId'])

        result = reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REJECTED, 'Not usable')

        assert result['engagement']['status'] == EngagementStatus.REJECTED
        channel = store.get(CHANNELS, active_engagement['engagementId'])
        assert channel['accessState'] == AccessState.READ_ONLY
        assert channel['closeReason'] == CloseReason.ENGAGEMENT_REJECTED

    def test_three_revisions_exhaust_and_allow_dispute(self, reviews, store, active_engagement):
        engagement_id = active_engagement['engagementId']
        for _ in range(3):
            submission = submit(reviews, engagement_id)
            result = reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'Again')

        engagement = result['engagement']
        assert engagement['status'] == EngagementStatus.EXHAUSTED
        assert engagement['usedIterations'] == 3
        assert engagement['remainingIterations'] == 0

        channel = store.get(CHANNELS, engagement_id)
        assert channel['accessState'] == AccessState.READ_ONLY
        assert channel['closeReason'] == CloseReason.ITERATIONS_EXHAUSTED

        with pytest.raises(NoIterationsRemaining) as exc_info:
            submit(reviews, engagement_id)
        assert exc_info.value.details['nextStep'] == 'raise_dispute'

        disputed = reviews.engagements.raise_dispute(engagement_id, CANDIDATE, 'Feedback kept changing')
        assert disputed['status'] == EngagementStatus.DISPUTED

    def test_approval_on_last_iteration_completes(self, reviews, store, clock, active_engagement):
        engagement_id = active_engagement['engagementId']
        for _ in range(2):
            submission = submit(reviews, engagement_id)
            reviews.review(submission['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'Again')

        final = submit(reviews, engagement_id)
        assert final['iterationNumber'] == 3
        result = reviews.review(final['submissionId'], COMPANY, ReviewOutcome.APPROVED)

        assert result['engagement']['status'] == EngagementStatus.COMPLETED
        assert result['engagement']['usedIterations'] == 2
        channel = store.get(CHANNELS, engagement_id)
        assert channel['accessState'] == AccessState.READ_ONLY
        assert channel['closeReason'] == CloseReason.ENGAGEMENT_COMPLETED
        assert channel['scheduledCloseAt'] == '2026-01-19T12:00:00Z'

    def test_list_submissions_signs_urls(self, reviews, active_engagement):
        engagement_id = active_engagement['engagementId']
        first = submit(reviews, engagement_id)
        reviews.review(first['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'Again')
        submit(reviews, engagement_id)

        listed = reviews.list_submissions(engagement_id, CANDIDATE)

        assert [s['iterationNumber'] for s in listed] == [1, 2]
        assert all(f['url'].endswith('?X-Amz-Signature=test') for s in listed for f in s['files'])
        with pytest.raises(NotAuthorized):
            reviews.list_submissions(engagement_id, 'stranger')


class BarrierStore(InMemoryStore):
    """Holds review transactions until every racing reviewer has read."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties)
        self.armed = False

    def transact(self, operations):
        if self.armed and any(isinstance(op, Update) and op.table == SUBMISSIONS for op in operations):
            self.barrier.wait(timeout=5)
        return super().transact(operations)


class TestConcurrentReviews:
    """Two reviewers racing on the last iteration."""

    def test_one_wins_one_conflicts(self, notifier, clock, gateway, storage):
        store = BarrierStore(parties=2)
        gate = ChannelAccessGate(store, notifier, clock=clock)
        engagements = EngagementStateMachine(store, AllowAllEntitlements(), notifier, clock=clock)
        engagements.subscribe(gate.on_transition)
        escrow = EscrowCoordinator(
            store, engagements, gateway, AllowAllEntitlements(), notifier,
            clock=clock, key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET,
        )
        reviews = ReviewStateMachine(store, engagements, storage, clock=clock)

        engagement = engagements.create('gig-race', COMPANY, CANDIDATE, total_iterations=2, agreed_amount='100.00')
        engagement_id = engagement['engagementId']
        fund(escrow, engagement_id)
        first = submit(reviews, engagement_id)
        reviews.review(first['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'Again')
        pending = submit(reviews, engagement_id)

        results, errors = [], []

        def review():
            try:
                results.append(reviews.review(
                    pending['submissionId'], COMPANY, ReviewOutcome.REVISION_REQUESTED, 'One more'
                ))
            except ConcurrentModification as e:
                errors.append(e)

        store.armed = True
        threads = [threading.Thread(target=review) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(results) == 1
        assert len(errors) == 1
        final = engagements.get(engagement_id)
        assert final['usedIterations'] == 2
        assert final['remainingIterations'] == 0
        assert final['status'] == EngagementStatus.EXHAUSTED

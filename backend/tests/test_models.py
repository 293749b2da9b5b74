"""
Tests for record builders and the serialization boundary.
"""
from decimal import Decimal

import pytest

from gigflow.errors import ValidationError
from gigflow.models import (
    EngagementStatus,
    engagement_view,
    from_legacy_application,
    normalize_status,
    parse_amount,
)


class TestLegacyMapping:
    """Legacy gig documents embed applications with duplicated fields."""

    def test_accepted_application_becomes_active(self):
        item = from_legacy_application('gig-1', 'company-1', {
            'user': 'cand-1',
            'status': 'accepted',
            'applicationStatus': 'accepted',
            'totalIterations': 4,
            'usedIterations': 1,
            'proposedRate': 120,
        })

        assert item['status'] == EngagementStatus.ACTIVE
        assert item['candidateId'] == 'cand-1'
        assert item['remainingIterations'] == 3
        assert item['agreedAmount'] == Decimal('120')

    def test_freelancer_preferred_over_user(self):
        item = from_legacy_application('gig-1', 'company-1', {'freelancer': 'f-1', 'user': 'u-1'})
        assert item['candidateId'] == 'f-1'

    def test_used_iterations_clamped(self):
        item = from_legacy_application('gig-1', 'company-1', {
            'user': 'u-1', 'totalIterations': 2, 'usedIterations': 5,
        })
        assert item['usedIterations'] == 2
        assert item['remainingIterations'] == 0

    def test_unknown_status_treated_as_pending(self):
        assert normalize_status('shortlisted') == EngagementStatus.PENDING
        assert normalize_status(None) == EngagementStatus.PENDING

    def test_view_exposes_alias(self):
        item = from_legacy_application('gig-1', 'company-1', {'user': 'u-1', 'status': 'accepted'})
        view = engagement_view(item)

        assert view['status'] == view['applicationStatus'] == 'active'


class TestParseAmount:

    def test_accepts_strings_and_decimals(self):
        assert parse_amount('10.50') == Decimal('10.50')
        assert parse_amount(Decimal('3')) == Decimal('3')

    @pytest.mark.parametrize('value', ['abc', '0', '-1', '1.234', 'NaN', '100000000', True, None])
    def test_rejects_bad_amounts(self, value):
        with pytest.raises(ValidationError):
            parse_amount(value)

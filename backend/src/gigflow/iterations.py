"""
Iteration budget accounting for one engagement.

Budget is consumed when a submission is reviewed as `revision_requested`,
never at submit time.
"""
import math
from decimal import Decimal
from typing import Any, Dict, Tuple

from .errors import NoIterationsRemaining, ValidationError
from .models import MAX_ITERATIONS, MIN_ITERATIONS


def validate_total(total: Any) -> int:
    """Validate a requested iteration budget (1..20)."""
    if isinstance(total, str) and total.strip().isdigit():
        value = int(total)
    elif isinstance(total, (int, Decimal)) and not isinstance(total, bool) and total % 1 == 0:
        value = int(total)
    else:
        raise ValidationError('totalIterations must be an integer')
    if not MIN_ITERATIONS <= value <= MAX_ITERATIONS:
        raise ValidationError(
            f'totalIterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}',
            {'totalIterations': value}
        )
    return value


def total(item: Dict[str, Any]) -> int:
    return int(item['totalIterations'])


def used(item: Dict[str, Any]) -> int:
    return int(item.get('usedIterations') or 0)


def remaining(item: Dict[str, Any]) -> int:
    return max(total(item) - used(item), 0)


def dispute_threshold(total_iterations: int) -> int:
    """Iterations that must be used before a dispute may be raised."""
    return math.ceil(total_iterations / 2)


def is_dispute_eligible(item: Dict[str, Any]) -> bool:
    return used(item) >= dispute_threshold(total(item))


def can_submit(item: Dict[str, Any]) -> bool:
    return remaining(item) > 0


def next_iteration_number(item: Dict[str, Any]) -> int:
    return used(item) + 1


def exhausted_error(item: Dict[str, Any]) -> NoIterationsRemaining:
    return NoIterationsRemaining(
        remaining=remaining(item),
        used=used(item),
        total=total(item),
        dispute_eligible=is_dispute_eligible(item),
    )


def consume(item: Dict[str, Any]) -> Tuple[int, int]:
    """
    Spend one iteration.

    Returns the new (used, remaining) pair. Raises NoIterationsRemaining
    instead of letting remaining go negative.
    """
    if remaining(item) <= 0:
        raise exhausted_error(item)
    new_used = used(item) + 1
    return new_used, total(item) - new_used


def summary(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'total': total(item),
        'used': used(item),
        'remaining': remaining(item),
        'disputeThreshold': dispute_threshold(total(item)),
        'disputeEligible': is_dispute_eligible(item),
    }

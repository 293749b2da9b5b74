"""
Authentication utilities for extracting user info from Cognito tokens.
"""
from typing import Optional

from .errors import NotAuthorized


def get_user_sub(event: dict) -> Optional[str]:
    """
    Extract user sub (unique ID) from Cognito authorizer claims.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        User sub string or None if not authenticated
    """
    try:
        return event['requestContext']['authorizer']['claims']['sub']
    except (KeyError, TypeError):
        return None


def get_user_groups(event: dict) -> list:
    """Extract user groups (company, candidate, admin) from Cognito claims."""
    try:
        groups = event['requestContext']['authorizer']['claims'].get('cognito:groups', '')
        if isinstance(groups, str):
            return groups.split(',') if groups else []
        return groups or []
    except (KeyError, TypeError):
        return []


def require_user(event: dict) -> str:
    """User sub, or NotAuthorized when the request is anonymous."""
    user_id = get_user_sub(event)
    if not user_id:
        raise NotAuthorized('Authentication required')
    return user_id


def is_company(event: dict) -> bool:
    """Check if user belongs to company (hiring) group."""
    return 'company' in get_user_groups(event)

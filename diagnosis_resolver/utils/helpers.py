"""
Utility helpers for the diagnosis code resolver

Simple utility functions for ID generation and timestamps.
"""

import uuid
from datetime import datetime, timezone


def generate_conversation_id(short=False):
    """
    Generate unique conversation identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID hex.

    Returns:
        str: Conversation ID

    Examples:
        >>> generate_conversation_id()
        'a3f7e2b9c1d2e3f4a5b6c7d8e9f0a1b2'

        >>> generate_conversation_id(short=True)
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def utc_now():
    """Timezone-aware current UTC time (default clock for stores and classifiers)."""
    return datetime.now(timezone.utc)

"""
Input Validators and Sanitizers

Security Considerations:
- Input validation prevents injection attacks
- Length limits bound lookup keys
"""

import re
from typing import Optional

ALIAS_PATTERN = re.compile(r'^[0-9A-Za-z_-]+$')
MAX_ALIAS_LENGTH = 64


def sanitize_alias(alias: str) -> Optional[str]:
    """
    Sanitize and validate an alias path segment.

    Aliases are created by the link management service and may contain
    alphanumerics, '-' and '_'. Anything else can never match a link.

    Args:
        alias: The raw path segment

    Returns:
        Sanitized alias if valid, None otherwise
    """
    if not alias or not isinstance(alias, str):
        return None

    alias = alias.strip()

    if len(alias) > MAX_ALIAS_LENGTH:
        return None

    if not ALIAS_PATTERN.match(alias):
        return None

    return alias


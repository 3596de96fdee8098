"""
Custom Exceptions

This module defines custom exceptions for the redirect and tracking paths.

Only the fast path (alias resolution) lets these reach the HTTP layer.
The tracking path catches and logs everything it raises.
"""

from typing import Optional


class LinkPulseException(Exception):
    """Base exception for the link redirect service."""
    pass


class LinkNotFoundError(LinkPulseException):
    """Raised when an alias is missing, inactive, deleted or expired."""

    def __init__(self, alias: str, reason: str = "not found"):
        self.alias = alias
        self.reason = reason
        super().__init__(f"Link '{alias}' {reason}")


class InvalidAliasError(LinkPulseException):
    """Raised when an alias contains characters that can never match a link."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"Invalid alias format: '{alias}'")


class DatabaseError(LinkPulseException):
    """Raised when database operations fail."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(f"Database error: {message}")


class WebhookDeliveryError(LinkPulseException):
    """Raised when a webhook endpoint does not accept a delivery."""

    def __init__(self, url: str, status_code: Optional[int] = None, message: str = ""):
        self.url = url
        self.status_code = status_code
        detail = f"status {status_code}" if status_code is not None else message
        super().__init__(f"Webhook delivery to {url} failed: {detail}")


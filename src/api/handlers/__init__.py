"""Webhook event handlers for GitHub events."""

from .webhook_event_handlers import (
    handle_issue_comment_event,
    handle_ping_event,
    handle_pull_request_event,
)

__all__ = [
    "handle_issue_comment_event",
    "handle_ping_event",
    "handle_pull_request_event",
]

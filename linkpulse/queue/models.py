"""
Data models for queue messages.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from linkpulse.db.models import utcnow

ANALYTICS_TOPIC = "analytics"
WEBHOOKS_TOPIC = "webhooks"


class QueueMessage(BaseModel):
    """
    Envelope for one job on a topic.

    The payload is opaque to the queue; attempts/max_attempts carry the retry
    policy with the message so any worker can apply it.
    """

    topic: str = Field(..., description="Logical queue name (analytics, webhooks)")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job body")
    attempts: int = Field(default=0, description="Delivery attempts made so far")
    max_attempts: int = Field(default=1, description="Attempts allowed before the job is dropped")
    enqueued_at: datetime = Field(default_factory=utcnow, description="When the job was first enqueued")
    job_id: str = Field(default_factory=lambda: str(uuid4()), description="Stable id across retries")

    # Broker-assigned id, set on consume and used for ack
    message_id: Optional[str] = Field(default=None, exclude=True)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_attempt(self) -> "QueueMessage":
        """Copy of this job for redelivery, with the attempt counted."""
        return self.model_copy(update={"attempts": self.attempts + 1, "message_id": None})

    model_config = {
        "json_schema_extra": {
            "example": {
                "topic": "webhooks",
                "payload": {"endpoint_id": "9f1c...", "event": "link.clicked", "payload": {}},
                "attempts": 0,
                "max_attempts": 5,
                "enqueued_at": "2026-01-01T10:30:00Z",
            }
        }
    }

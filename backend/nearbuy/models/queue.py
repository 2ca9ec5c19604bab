# /nearbuy/models/queue.py

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from nearbuy.models.domain import Lane, utcnow

# Queue records shared by the Redis and in-memory priority queues.


class JobPolicy(BaseModel):
    """Declarative execution settings for one job kind."""
    lane: Lane = Lane.DEFAULT
    tries: int = Field(default=3, ge=1)
    backoff: List[int] = Field(default_factory=lambda: [60, 120, 240])
    retry_until: int = 7200
    timeout: float = 30.0
    unique_for: int = 300

    model_config = ConfigDict(frozen=True)

    def backoff_for(self, attempt: int) -> int:
        """Delay after the given (1-based) failed attempt; the last entry repeats."""
        index = min(max(attempt, 1), len(self.backoff)) - 1
        return self.backoff[index]


class QueueJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: str
    lane: Lane = Lane.DEFAULT
    payload: Dict[str, Any] = {}
    unique_key: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    next_eligible_at: datetime = Field(default_factory=utcnow)
    deadline_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def new(cls, kind: str, payload: Dict[str, Any], policy: JobPolicy,
            unique_key: Optional[str] = None, delay: float = 0,
            lane: Optional[Lane] = None, now: Optional[datetime] = None) -> "QueueJob":
        now = now or utcnow()
        return cls(
            kind=kind,
            lane=lane or policy.lane,
            payload=payload,
            unique_key=unique_key,
            max_attempts=policy.tries,
            created_at=now,
            next_eligible_at=now + timedelta(seconds=delay),
            deadline_at=now + timedelta(seconds=policy.retry_until),
        )

    def is_ready(self, now: datetime) -> bool:
        return now >= self.next_eligible_at

"""Definitions for crawl jobs and their lifecycle."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

PENDING = "pending"
CRAWLING = "crawling"
PROCESSING = "processing"
CAPTIONING = "captioning"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, CRAWLING, PROCESSING, CAPTIONING, COMPLETED, FAILED)

HIGH = "high"
NORMAL = "normal"
LOW = "low"

# lower rank drains first
PRIORITY_RANK = {HIGH: 1, NORMAL: 2, LOW: 3}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A unit of crawl work targeting a single URL."""

    url: str
    depth: int = 0
    parent_url: Optional[str] = None
    priority: str = NORMAL
    status: str = PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.priority not in PRIORITY_RANK:
            raise ValueError(f"Unknown job priority: {self.priority}")
        if self.status not in STATUSES:
            raise ValueError(f"Unknown job status: {self.status}")
        if self.depth < 0:
            raise ValueError("Job depth must be non-negative")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Job":
        return cls(
            job_id=row["id"],
            url=row["url"],
            depth=row["depth"],
            parent_url=row["parent_url"],
            priority=row["priority"],
            status=row["status"],
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

# backend/autocrop/models.py
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlmodel import SQLModel, Field

PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"
TERMINAL_STATUSES = (COMPLETED, ERROR)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        # sqlite hands datetimes back naive; they were stored as UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Job(SQLModel, table=True):
    id: str = Field(primary_key=True, nullable=False)
    status: str = Field(default=PROCESSING, nullable=False)  # processing | completed | error
    progress: int = Field(default=0, nullable=False)  # 0 - 100
    source: str = Field(nullable=False)
    result: Optional[str] = Field(default=None)  # store JSON string
    error: Optional[str] = Field(default=None)
    artifact_path: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def result_data(self) -> Optional[Dict[str, Any]]:
        if not self.result:
            return None
        try:
            return json.loads(self.result)
        except ValueError:
            return {"raw": self.result}

    def to_status_dict(self) -> Dict[str, Any]:
        """Polling payload; keys only appear when they mean something for the status."""
        data: Dict[str, Any] = {
            "jobId": self.id,
            "status": self.status,
            "source": self.source,
            "createdAt": _iso(self.created_at),
        }
        if self.status == PROCESSING:
            data["progress"] = self.progress
        elif self.status == COMPLETED:
            data["progress"] = self.progress
            data["completedAt"] = _iso(self.completed_at)
            data["result"] = self.result_data()
        elif self.status == ERROR:
            data["completedAt"] = _iso(self.completed_at)
            data["error"] = self.error
        return data

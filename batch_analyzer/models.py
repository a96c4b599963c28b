from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .cancellation import Cancellation, CancellationHandle


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass(frozen=True)
class WorkItem:
    """One video submitted for analysis.

    ``payload`` is the enriched video metadata forwarded untouched to the
    analysis backend.
    """

    id: str
    title: str = ""
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_video(cls, video: dict[str, Any]) -> "WorkItem":
        video_id = str(video.get("id") or video.get("videoId") or "").strip()
        if not video_id:
            raise ValueError("Video payload has no id")
        return cls(id=video_id, title=str(video.get("title") or ""), payload=dict(video))


@dataclass
class JobProgress:
    total: int = 0
    current: int = 0
    success: int = 0
    fail: int = 0

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.current / self.total * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "current": self.current,
            "success": self.success,
            "fail": self.fail,
            "percentage": self.percentage,
        }


@dataclass
class BatchJob:
    id: str
    label: str
    started_at: datetime
    progress: JobProgress
    status: JobStatus = JobStatus.RUNNING
    cancellation: Cancellation = field(default_factory=CancellationHandle)
    finished_at: datetime | None = None
    item_ids: tuple[str, ...] = ()

    def snapshot(self) -> "BatchJob":
        return BatchJob(
            id=self.id,
            label=self.label,
            started_at=self.started_at,
            progress=copy.copy(self.progress),
            status=self.status,
            cancellation=self.cancellation.view(),
            finished_at=self.finished_at,
            item_ids=self.item_ids,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "cancel_requested": self.cancellation.is_signalled(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "item_ids": list(self.item_ids),
        }

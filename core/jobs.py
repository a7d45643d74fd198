"""In-memory job records and a background runner for sync passes."""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from core.errors import SyncError
from core.pipeline import ProgressChannel, ProgressEvent
from core.sync_service import SyncService
from db import utc_now_iso

logger = logging.getLogger(__name__)

ACTIVE_STATES = frozenset({"pending", "running"})
DEFAULT_RETAINED_JOBS = 50


@dataclass
class Job:
    id: str
    connection_id: str
    status: str = "pending"
    message: str = "Queued"
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "connection_id": self.connection_id,
            "status": self.status,
            "message": self.message,
            "progress": self.progress,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if self.result is not None:
            payload["result"] = self.result
        return payload


class JobStore:
    """Thread-safe registry of sync jobs.

    Only the newest ``retain_finished`` finished jobs are kept; active jobs are
    never dropped.
    """

    def __init__(self, retain_finished: int = DEFAULT_RETAINED_JOBS) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._retain_finished = max(0, retain_finished)

    def create(self, connection_id: str) -> Job:
        job = Job(id=str(uuid.uuid4()), connection_id=connection_id)
        with self._lock:
            self._jobs[job.id] = job
            self._prune_locked()
        return job

    def _prune_locked(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.status not in ACTIVE_STATES]
        excess = len(finished) - self._retain_finished
        for job_id in finished[:max(0, excess)]:
            del self._jobs[job_id]

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, **fields: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            for name, value in fields.items():
                setattr(job, name, value)

    def active_for(self, connection_id: str) -> Optional[Job]:
        with self._lock:
            for job in self._jobs.values():
                if job.connection_id == connection_id and job.status in ACTIVE_STATES:
                    return job
        return None

    def poll(self, job_id: str) -> Dict[str, Any]:
        job = self.get(job_id)
        if job is None:
            return {"ok": False, "error": "Job not found"}
        with self._lock:
            return {"ok": True, "job": job.as_dict()}


class SyncJobRunner:
    """Run each sync on a daemon thread; one in-flight job per connection."""

    def __init__(self, service_factory: Callable[[], SyncService], jobs: Optional[JobStore] = None) -> None:
        self._service_factory = service_factory
        self.jobs = jobs or JobStore()
        self._submit_lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}

    def submit(self, connection_id: str) -> Job:
        """Start a job, or return the one already running for ``connection_id``."""

        with self._submit_lock:
            existing = self.jobs.active_for(connection_id)
            if existing is not None:
                logger.info("Sync for %s already in flight as job %s", connection_id, existing.id)
                return existing
            job = self.jobs.create(connection_id)
            thread = threading.Thread(
                target=self._execute,
                args=(job.id, connection_id),
                name=f"sync-{connection_id[:8]}",
                daemon=True,
            )
            self._threads[job.id] = thread
        thread.start()
        return job

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
            if not thread.is_alive():
                with self._submit_lock:
                    self._threads.pop(job_id, None)
        return self.jobs.get(job_id)

    def _execute(self, job_id: str, connection_id: str) -> None:
        channel = ProgressChannel()

        def forward(event: ProgressEvent) -> None:
            text = f"{event.step}: {event.message}" if event.message else f"{event.step} {event.state}"
            self.jobs.update(job_id, message=text, progress=event.percent)

        channel.subscribe(forward)
        self.jobs.update(job_id, status="running", message="Starting", started_at=utc_now_iso())
        try:
            result = self._service_factory().sync_connection(connection_id, channel)
        except SyncError as exc:
            self.jobs.update(job_id, status="error", message=str(exc), finished_at=utc_now_iso())
        except Exception as exc:
            logger.exception("Unexpected failure in sync job %s", job_id)
            self.jobs.update(
                job_id,
                status="error",
                message=f"Unexpected error: {exc}",
                finished_at=utc_now_iso(),
            )
        else:
            message = "Sync completed"
            if result.warnings:
                message += f" with warnings in: {', '.join(sorted(result.warnings))}"
            self.jobs.update(
                job_id,
                status="done",
                message=message,
                progress=100,
                result=result.as_dict(),
                finished_at=utc_now_iso(),
            )
        finally:
            channel.unsubscribe(forward)
            with self._submit_lock:
                self._threads.pop(job_id, None)


__all__ = ["Job", "JobStore", "SyncJobRunner"]

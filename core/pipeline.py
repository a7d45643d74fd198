"""Sequential step runner with fatal/advisory failure policy and progress events."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

ProgressListener = Callable[["ProgressEvent"], None]


@dataclass(slots=True)
class ProgressEvent:
    step: str
    state: str
    message: str = ""
    index: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if not self.total:
            return 0
        done = self.index if self.state in {"finished", "failed", "skipped"} else self.index - 1
        return int(100 * max(0, done) / self.total)


class ProgressChannel:
    """Fan-out of progress events to any number of listeners."""

    def __init__(self, history: int = 100) -> None:
        self._listeners: List[ProgressListener] = []
        self._lock = threading.Lock()
        self._history: Deque[ProgressEvent] = deque(maxlen=history)

    def subscribe(self, listener: ProgressListener) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._history.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener raised an exception")

    def history(self) -> List[ProgressEvent]:
        with self._lock:
            return list(self._history)


@dataclass(slots=True)
class Step:
    """One unit of a sync pass.

    A fatal step's exception aborts the pass; an advisory step's exception is
    logged and recorded as a warning.
    """

    name: str
    run: Callable[[], Optional[str]]
    fatal: bool = False
    enabled: Callable[[], bool] = lambda: True


@dataclass(slots=True)
class PipelineResult:
    completed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: Dict[str, str] = field(default_factory=dict)


def run_steps(steps: Sequence[Step], channel: Optional[ProgressChannel] = None) -> PipelineResult:
    """Run ``steps`` in order, enforcing each step's failure policy."""

    channel = channel or ProgressChannel()
    result = PipelineResult()
    total = len(steps)
    for index, step in enumerate(steps, start=1):
        if not step.enabled():
            result.skipped.append(step.name)
            channel.publish(ProgressEvent(step.name, "skipped", index=index, total=total))
            continue
        channel.publish(ProgressEvent(step.name, "started", index=index, total=total))
        try:
            message = step.run()
        except Exception as exc:
            if step.fatal:
                channel.publish(ProgressEvent(step.name, "failed", str(exc), index, total))
                raise
            logger.exception("Advisory step %s failed; continuing", step.name)
            result.warnings[step.name] = str(exc) or exc.__class__.__name__
            channel.publish(ProgressEvent(step.name, "failed", str(exc), index, total))
            continue
        result.completed.append(step.name)
        channel.publish(ProgressEvent(step.name, "finished", message or "", index, total))
    return result


__all__ = ["PipelineResult", "ProgressChannel", "ProgressEvent", "Step", "run_steps"]

import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .models import ResultStatus, utc_now


@dataclass
class RunContext:
    """Per-run state handed to the coordinator.

    Holds the run identifier, timeout overrides, transition counters and the
    cancellation flag. Safe to share between the worker threads of a batch.
    """
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=utc_now)
    confirm_timeout: Optional[float] = None
    _counters: Counter = field(default_factory=Counter, repr=False)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def cancel(self) -> None:
        """Stop the run before its next batch starts"""
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def count(self, status: ResultStatus) -> None:
        with self._lock:
            self._counters[status.value] += 1

    @property
    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    @property
    def elapsed_seconds(self) -> float:
        return (utc_now() - self.started_at).total_seconds()

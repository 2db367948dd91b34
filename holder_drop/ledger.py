"""
Durable record of distribution requests and their per-recipient results.

`FileLedger` keeps one append-only JSON-lines file per request. The first
line records the request, later lines record result transitions and
finalization. Replaying a file rebuilds the record, so a crashed run can be
resumed from whatever was last written.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from .errors import DuplicateRequestError, HolderDropError, NotFoundError
from .models import (
    DistributionRecord,
    DistributionRequest,
    DistributionResult,
    ResultStatus,
    utc_now,
)

EVENT_RECORD = "record"
EVENT_RESULT = "result"
EVENT_FINALIZE = "finalize"


class Ledger(ABC):
    @abstractmethod
    def record(self, request: DistributionRequest) -> DistributionRecord:
        ...

    @abstractmethod
    def update_result(self, request_id: str, result: DistributionResult) -> DistributionResult:
        ...

    @abstractmethod
    def finalize(self, request_id: str, aborted: bool = False) -> bool:
        ...

    @abstractmethod
    def get(self, request_id: str) -> Optional[DistributionRecord]:
        ...

    @abstractmethod
    def query(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
              mint: Optional[str] = None,
              status: Optional[ResultStatus] = None) -> Iterator[DistributionRecord]:
        ...


def matches(record: DistributionRecord, start: Optional[datetime], end: Optional[datetime],
            mint: Optional[str], status: Optional[ResultStatus]) -> bool:
    created = record.request.created_at
    if start is not None and created < start:
        return False
    if end is not None and created > end:
        return False
    if mint is not None and record.request.mint != mint:
        return False
    if status is not None and not record.has_status([ResultStatus(status)]):
        return False
    return True


class FileLedger(Ledger):
    def __init__(self, ledger_dir: Union[str, Path]):
        self.ledger_dir = Path(ledger_dir)
        self.ledger_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(__name__)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Unfinalized records touched by this process, kept in step with their files
        self._open: Dict[str, DistributionRecord] = {}

    def _path(self, request_id: str) -> Path:
        return self.ledger_dir / f"{request_id}.jsonl"

    def _lock_for(self, request_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(request_id)
            if lock is None:
                lock = self._locks[request_id] = threading.Lock()
            return lock

    def _append(self, request_id: str, event: Dict) -> None:
        with open(self._path(request_id), "a", encoding="utf-8") as f:
            f.write(json.dumps(event) + "\n")
            f.flush()

    def _replay(self, path: Path) -> DistributionRecord:
        record: Optional[DistributionRecord] = None
        with open(path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except ValueError:
                    # A torn final line from a crash mid-write
                    self.logger.warning(f"Ignoring unreadable line {line_number} in {path}")
                    continue
                kind = event.get("event")
                if kind == EVENT_RECORD:
                    record = DistributionRecord.new(DistributionRequest.from_dict(event["request"]))
                elif record is None:
                    raise HolderDropError(f"Ledger file {path} does not start with a request", {"path": str(path)})
                elif kind == EVENT_RESULT:
                    result = DistributionResult.from_dict(event["result"])
                    record.results[result.recipient] = result
                elif kind == EVENT_FINALIZE:
                    record.completed_at = datetime.fromisoformat(event["completed_at"])
                    record.aborted = bool(event.get("aborted", False))
        if record is None:
            raise HolderDropError(f"Ledger file {path} is empty", {"path": str(path)})
        return record

    def _load(self, request_id: str) -> DistributionRecord:
        """Return the live record; caller holds the request lock"""
        record = self._open.get(request_id)
        if record is None:
            path = self._path(request_id)
            if not path.exists():
                raise NotFoundError(f"No distribution request {request_id}", {"request_id": request_id})
            record = self._replay(path)
            if not record.is_finalized:
                self._open[request_id] = record
        return record

    def record(self, request: DistributionRequest) -> DistributionRecord:
        with self._lock_for(request.id):
            if request.id in self._open or self._path(request.id).exists():
                raise DuplicateRequestError(f"Request {request.id} already recorded", {"request_id": request.id})
            self._append(request.id, {"event": EVENT_RECORD, "request": request.to_dict()})
            record = self._open[request.id] = DistributionRecord.new(request)
        self.logger.info(f"Recorded request {request.id} with {len(request.entries)} entries")
        return record

    def update_result(self, request_id: str, result: DistributionResult) -> DistributionResult:
        with self._lock_for(request_id):
            record = self._load(request_id)
            current = record.results.get(result.recipient)
            if current is None:
                raise NotFoundError(
                    f"{result.recipient} is not a recipient of request {request_id}",
                    {"request_id": request_id, "recipient": result.recipient},
                )
            # Raises StatusRegressionError when leaving a terminal status
            current.advance(result.status)
            self._append(request_id, {"event": EVENT_RESULT, "result": result.to_dict()})
            record.results[result.recipient] = result
        return result

    def finalize(self, request_id: str, aborted: bool = False) -> bool:
        with self._lock_for(request_id):
            record = self._load(request_id)
            if record.is_finalized:
                self._open.pop(request_id, None)
                return True
            if not aborted and not record.is_terminal:
                self.logger.debug(f"Request {request_id} has {record.pending_count} unresolved results")
                return False
            record.completed_at = utc_now()
            record.aborted = aborted
            self._append(request_id, {
                "event": EVENT_FINALIZE,
                "completed_at": record.completed_at.isoformat(),
                "aborted": aborted,
            })
            # Finished records are read back from disk on demand
            self._open.pop(request_id, None)
        self.logger.info(f"Finalized request {request_id}{' (aborted)' if aborted else ''}")
        return True

    def get(self, request_id: str) -> Optional[DistributionRecord]:
        try:
            with self._lock_for(request_id):
                record = self._load(request_id)
                return DistributionRecord(
                    request=record.request,
                    results=dict(record.results),
                    completed_at=record.completed_at,
                    aborted=record.aborted,
                )
        except NotFoundError:
            return None

    def _created_at(self, path: Path) -> str:
        with open(path, encoding="utf-8") as f:
            first = f.readline()
        try:
            return json.loads(first)["request"]["created_at"]
        except (ValueError, KeyError, TypeError):
            return ""

    def query(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
              mint: Optional[str] = None,
              status: Optional[ResultStatus] = None) -> Iterator[DistributionRecord]:
        """Yield matching records oldest first, replaying one file at a time"""
        paths = sorted(self.ledger_dir.glob("*.jsonl"), key=self._created_at)
        for path in paths:
            try:
                record = self._replay(path)
            except HolderDropError as e:
                self.logger.warning(f"Skipping ledger file: {e}")
                continue
            if matches(record, start, end, mint, status):
                yield record

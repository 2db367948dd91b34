import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Union

from .models import Snapshot, utc_now

logger = logging.getLogger(__name__)


class SnapshotCache(ABC):
    """Key-value store for snapshots with a time-to-live"""

    @abstractmethod
    def get(self, key: str) -> Optional[Snapshot]:
        ...

    @abstractmethod
    def put(self, key: str, snapshot: Snapshot, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryCache(SnapshotCache):
    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._entries: Dict[str, Tuple[Snapshot, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Snapshot]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        snapshot, expires_at = entry
        if self.clock() >= expires_at:
            with self._lock:
                self._entries.pop(key, None)
            return None
        return snapshot

    def put(self, key: str, snapshot: Snapshot, ttl_seconds: int) -> None:
        expires_at = snapshot.captured_at + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._entries[key] = (snapshot, expires_at)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class FileCache(SnapshotCache):
    """One JSON file per key under `cache_dir`, named by the key's SHA-256"""

    def __init__(self, cache_dir: Union[str, Path], clock: Callable[[], datetime] = utc_now):
        self.cache_dir = Path(cache_dir)
        self.clock = clock
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def get(self, key: str) -> Optional[Snapshot]:
        path = self._path(key)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None

        if data.get("key") != key:
            return None
        if self.clock() >= datetime.fromisoformat(data["expires_at"]):
            logger.debug(f"Cache entry {key} expired")
            with self._lock:
                path.unlink(missing_ok=True)
            return None
        return Snapshot.from_dict(data["value"])

    def put(self, key: str, snapshot: Snapshot, ttl_seconds: int) -> None:
        payload = {
            "key": key,
            "created_at": self.clock().isoformat(),
            "expires_at": (snapshot.captured_at + timedelta(seconds=ttl_seconds)).isoformat(),
            "value": snapshot.to_dict(),
        }
        path = self._path(key)
        with self._lock:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp.replace(path)

    def clear(self) -> None:
        with self._lock:
            if not self.cache_dir.exists():
                return
            for path in self.cache_dir.glob("*.json"):
                path.unlink(missing_ok=True)
        logger.info(f"Cleared snapshot cache at {self.cache_dir}")

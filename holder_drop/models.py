import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import InvalidAddressError, InvalidAmountError, StatusRegressionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def to_raw_amount(amount: Decimal, decimals: int) -> int:
    """Convert a human-readable token amount into raw units, rounding down"""
    scaled = (Decimal(amount) * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def to_ui_amount(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


class DistributionMode(str, Enum):
    EQUAL = "equal"
    PROPORTIONAL = "proportional"


class ResultStatus(str, Enum):
    PENDING = "pending"
    SUBMITTING = "submitting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RETRY_PENDING = "retry_pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ResultStatus.CONFIRMED, ResultStatus.FAILED)


@dataclass(frozen=True)
class HolderBalance:
    """A single holder's raw balance at snapshot time"""
    address: str
    balance: int

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "balance": self.balance}


@dataclass(frozen=True)
class SnapshotFilters:
    threshold: int = 0
    excluded: FrozenSet[str] = frozenset()
    max_holders: Optional[int] = None

    def cache_key(self, mint: str) -> str:
        excluded = "|".join(sorted(self.excluded)) or "none"
        limit = self.max_holders if self.max_holders is not None else "unlimited"
        return f"holders_{mint}_{self.threshold}_{limit}_{excluded}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "excluded": sorted(self.excluded),
            "max_holders": self.max_holders,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotFilters":
        return cls(
            threshold=int(data.get("threshold", 0)),
            excluded=frozenset(data.get("excluded") or ()),
            max_holders=data.get("max_holders"),
        )


@dataclass(frozen=True)
class Snapshot:
    """Immutable capture of filtered holder balances for one mint"""
    mint: str
    captured_at: datetime
    holders: Tuple[HolderBalance, ...]
    filters: SnapshotFilters
    truncated: bool = False
    ttl_seconds: int = 0

    @property
    def holder_count(self) -> int:
        return len(self.holders)

    @property
    def total_balance(self) -> int:
        return sum(h.balance for h in self.holders)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return (now - self.captured_at).total_seconds() >= self.ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mint": self.mint,
            "captured_at": _format_ts(self.captured_at),
            "holders": [h.to_dict() for h in self.holders],
            "filters": self.filters.to_dict(),
            "truncated": self.truncated,
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            mint=data["mint"],
            captured_at=_parse_ts(data["captured_at"]),
            holders=tuple(HolderBalance(h["address"], int(h["balance"])) for h in data["holders"]),
            filters=SnapshotFilters.from_dict(data.get("filters") or {}),
            truncated=bool(data.get("truncated", False)),
            ttl_seconds=int(data.get("ttl_seconds", 0)),
        )


@dataclass(frozen=True)
class AllocationEntry:
    recipient: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {"recipient": self.recipient, "amount": self.amount}


@dataclass(frozen=True)
class Allocation:
    """Result of splitting a total amount across a snapshot"""
    mode: DistributionMode
    total_amount: int
    entries: Tuple[AllocationEntry, ...]
    undistributed: int
    skipped: Tuple[str, ...] = ()

    @property
    def distributed(self) -> int:
        return sum(e.amount for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "total_amount": self.total_amount,
            "distributed": self.distributed,
            "undistributed": self.undistributed,
            "skipped": list(self.skipped),
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass(frozen=True)
class DistributionRequest:
    """One distribution run; immutable once created"""
    mint: str
    source: str
    total_amount: int
    mode: DistributionMode
    batch_size: int
    entries: Tuple[AllocationEntry, ...]
    decimals: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.total_amount <= 0:
            raise InvalidAmountError("Total amount must be greater than 0", {"total_amount": self.total_amount})
        if self.batch_size <= 0:
            raise InvalidAmountError("Batch size must be positive", {"batch_size": self.batch_size})
        seen = set()
        for entry in self.entries:
            if entry.recipient in seen:
                raise InvalidAddressError(
                    f"Duplicate recipient in request: {entry.recipient}",
                    {"recipient": entry.recipient},
                )
            if entry.amount <= 0:
                raise InvalidAmountError(
                    f"Entry amount must be positive for {entry.recipient}",
                    {"recipient": entry.recipient, "amount": entry.amount},
                )
            seen.add(entry.recipient)
        allocated = sum(e.amount for e in self.entries)
        if allocated > self.total_amount:
            raise InvalidAmountError(
                f"Entries allocate {allocated}, more than the total {self.total_amount}",
                {"allocated": allocated, "total_amount": self.total_amount},
            )

    @property
    def allocated_amount(self) -> int:
        return sum(e.amount for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mint": self.mint,
            "source": self.source,
            "total_amount": self.total_amount,
            "mode": self.mode.value,
            "batch_size": self.batch_size,
            "decimals": self.decimals,
            "entries": [e.to_dict() for e in self.entries],
            "created_at": _format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistributionRequest":
        return cls(
            id=data["id"],
            mint=data["mint"],
            source=data["source"],
            total_amount=int(data["total_amount"]),
            mode=DistributionMode(data["mode"]),
            batch_size=int(data["batch_size"]),
            decimals=int(data.get("decimals", 0)),
            entries=tuple(AllocationEntry(e["recipient"], int(e["amount"])) for e in data["entries"]),
            created_at=_parse_ts(data["created_at"]),
        )


@dataclass(frozen=True)
class DistributionResult:
    """Outcome of one allocation entry; replaced, never mutated"""
    recipient: str
    amount: int
    status: ResultStatus = ResultStatus.PENDING
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(self, status: ResultStatus, **changes) -> "DistributionResult":
        """Return a copy moved to `status`.

        A terminal result can only be re-written with its own status.
        """
        if self.is_terminal and status != self.status:
            raise StatusRegressionError(
                f"Result for {self.recipient} is already {self.status.value}",
                {"recipient": self.recipient, "current": self.status.value, "requested": status.value},
            )
        return replace(self, status=status, timestamp=utc_now(), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "amount": self.amount,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "error": self.error,
            "attempts": self.attempts,
            "timestamp": _format_ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistributionResult":
        return cls(
            recipient=data["recipient"],
            amount=int(data["amount"]),
            status=ResultStatus(data["status"]),
            transaction_id=data.get("transaction_id"),
            error=data.get("error"),
            attempts=int(data.get("attempts", 0)),
            timestamp=_parse_ts(data["timestamp"]),
        )

    @classmethod
    def pending_for(cls, entry: AllocationEntry) -> "DistributionResult":
        return cls(recipient=entry.recipient, amount=entry.amount)


@dataclass
class DistributionRecord:
    """Ledger view of a request and the latest result per recipient"""
    request: DistributionRequest
    results: Dict[str, DistributionResult]
    completed_at: Optional[datetime] = None
    aborted: bool = False

    @classmethod
    def new(cls, request: DistributionRequest) -> "DistributionRecord":
        return cls(
            request=request,
            results={e.recipient: DistributionResult.pending_for(e) for e in request.entries},
        )

    def ordered_results(self) -> List[DistributionResult]:
        return [self.results[e.recipient] for e in self.request.entries]

    def count(self, status: ResultStatus) -> int:
        return sum(1 for r in self.results.values() if r.status == status)

    @property
    def confirmed_count(self) -> int:
        return self.count(ResultStatus.CONFIRMED)

    @property
    def failed_count(self) -> int:
        return self.count(ResultStatus.FAILED)

    @property
    def pending_count(self) -> int:
        return sum(1 for r in self.results.values() if not r.is_terminal)

    @property
    def confirmed_amount(self) -> int:
        return sum(r.amount for r in self.results.values() if r.status == ResultStatus.CONFIRMED)

    @property
    def is_terminal(self) -> bool:
        return all(r.is_terminal for r in self.results.values())

    @property
    def is_finalized(self) -> bool:
        return self.completed_at is not None

    def has_status(self, statuses: Iterable[ResultStatus]) -> bool:
        wanted = set(statuses)
        return any(r.status in wanted for r in self.results.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "results": [r.to_dict() for r in self.ordered_results()],
            "completed_at": _format_ts(self.completed_at),
            "aborted": self.aborted,
            "summary": {
                "confirmed": self.confirmed_count,
                "failed": self.failed_count,
                "unresolved": self.pending_count,
                "confirmed_amount": self.confirmed_amount,
            },
        }

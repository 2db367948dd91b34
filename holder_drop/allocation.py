"""
Allocation of a total distribution amount across a holder snapshot.

All arithmetic happens on integers in the token's smallest unit. Each
recipient's share is rounded down and the remainder is reported as
`undistributed`; it is never handed to an arbitrary recipient.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .errors import EmptySnapshotError, InvalidAmountError
from .models import Allocation, AllocationEntry, DistributionMode, Snapshot

logger = logging.getLogger(__name__)


def allocate(snapshot: Snapshot, total_amount: int, mode: DistributionMode) -> Allocation:
    """Split `total_amount` raw units across the snapshot's holders.

    Output order follows the snapshot's holder order, so identical inputs
    always give an identical allocation.

    Raises:
        InvalidAmountError: total_amount <= 0, or too small for equal mode
        EmptySnapshotError: the snapshot has no holders
    """
    if total_amount <= 0:
        raise InvalidAmountError("Distribution amount must be positive", {"total_amount": total_amount})
    if not snapshot.holders:
        raise EmptySnapshotError(f"Snapshot of {snapshot.mint} has no eligible holders", {"mint": snapshot.mint})

    mode = DistributionMode(mode)
    if mode == DistributionMode.EQUAL:
        allocation = _allocate_equal(snapshot, total_amount)
    else:
        allocation = _allocate_proportional(snapshot, total_amount)

    logger.debug(
        f"Allocated {allocation.distributed} of {total_amount} to {len(allocation.entries)} recipients "
        f"({mode.value}); {allocation.undistributed} undistributed"
    )
    return allocation


def _allocate_equal(snapshot: Snapshot, total_amount: int) -> Allocation:
    holder_count = len(snapshot.holders)
    per_recipient, remainder = divmod(total_amount, holder_count)
    if per_recipient == 0:
        raise InvalidAmountError(
            f"Total amount {total_amount} is smaller than the {holder_count} recipients",
            {"total_amount": total_amount, "holders": holder_count},
        )
    entries = tuple(AllocationEntry(h.address, per_recipient) for h in snapshot.holders)
    return Allocation(
        mode=DistributionMode.EQUAL,
        total_amount=total_amount,
        entries=entries,
        undistributed=remainder,
    )


def _allocate_proportional(snapshot: Snapshot, total_amount: int) -> Allocation:
    total_balance = sum(h.balance for h in snapshot.holders if h.balance > 0)
    if total_balance == 0:
        raise EmptySnapshotError(f"Snapshot of {snapshot.mint} holds no balance", {"mint": snapshot.mint})

    entries: List[AllocationEntry] = []
    skipped: List[str] = []
    for holder in snapshot.holders:
        if holder.balance <= 0:
            continue
        amount = total_amount * holder.balance // total_balance
        if amount == 0:
            skipped.append(holder.address)
            continue
        entries.append(AllocationEntry(holder.address, amount))

    if not entries:
        raise InvalidAmountError(
            f"Total amount {total_amount} is too small; every share rounds down to zero",
            {"total_amount": total_amount},
        )
    distributed = sum(e.amount for e in entries)
    return Allocation(
        mode=DistributionMode.PROPORTIONAL,
        total_amount=total_amount,
        entries=tuple(entries),
        undistributed=total_amount - distributed,
        skipped=tuple(skipped),
    )


@dataclass
class EstimateSettings:
    fee_per_transfer: Decimal = Decimal("0.000005")
    seconds_per_batch: float = 2.0
    large_amount_threshold: Optional[int] = None
    large_recipient_count: int = 1000
    dust_threshold: int = 0


@dataclass
class SimulationReport:
    """Dry-run summary of an allocation"""
    recipient_count: int
    batch_count: int
    total_amount: int
    distributed: int
    undistributed: int
    min_amount: int
    max_amount: int
    average_amount: Decimal
    estimated_fee: Decimal
    estimated_seconds: float
    risk_factors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "recipient_count": self.recipient_count,
            "batch_count": self.batch_count,
            "total_amount": self.total_amount,
            "distributed": self.distributed,
            "undistributed": self.undistributed,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "average_amount": str(self.average_amount),
            "estimated_fee": str(self.estimated_fee),
            "estimated_seconds": self.estimated_seconds,
            "risk_factors": list(self.risk_factors),
        }


def estimate(allocation: Allocation, batch_size: int, settings: Optional[EstimateSettings] = None) -> SimulationReport:
    """Estimate cost and duration of executing `allocation`, and flag risks"""
    settings = settings or EstimateSettings()
    if batch_size <= 0:
        raise InvalidAmountError("Batch size must be positive", {"batch_size": batch_size})

    amounts = [e.amount for e in allocation.entries]
    count = len(amounts)
    batch_count = -(-count // batch_size)

    risks = []
    if settings.large_amount_threshold is not None and allocation.total_amount > settings.large_amount_threshold:
        risks.append("Large distribution amount may require additional confirmation")
    if count > settings.large_recipient_count:
        risks.append("Large number of recipients may result in longer execution time")
    dust = sum(1 for a in amounts if a <= settings.dust_threshold)
    if dust:
        risks.append(f"{dust} recipients will receive very small amounts")
    if allocation.skipped:
        risks.append(f"{len(allocation.skipped)} holders receive nothing after rounding")

    return SimulationReport(
        recipient_count=count,
        batch_count=batch_count,
        total_amount=allocation.total_amount,
        distributed=allocation.distributed,
        undistributed=allocation.undistributed,
        min_amount=min(amounts) if amounts else 0,
        max_amount=max(amounts) if amounts else 0,
        average_amount=(Decimal(sum(amounts)) / count) if count else Decimal(0),
        estimated_fee=settings.fee_per_transfer * count,
        estimated_seconds=batch_count * settings.seconds_per_batch,
        risk_factors=risks,
    )

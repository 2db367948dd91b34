import logging
from pathlib import Path
from typing import Iterable, Union

import pandas as pd

from .errors import ConfigurationError
from .models import Allocation, DistributionRecord, Snapshot, to_ui_amount

logger = logging.getLogger(__name__)

FORMATS = ("csv", "json")


def snapshot_frame(snapshot: Snapshot, decimals: int = 0) -> pd.DataFrame:
    frame = pd.DataFrame(
        [h.to_dict() for h in snapshot.holders],
        columns=["address", "balance"],
    )
    frame["ui_balance"] = [str(to_ui_amount(h.balance, decimals)) for h in snapshot.holders]
    return frame


def allocation_frame(allocation: Allocation, decimals: int = 0) -> pd.DataFrame:
    frame = pd.DataFrame(
        [e.to_dict() for e in allocation.entries],
        columns=["recipient", "amount"],
    )
    frame["ui_amount"] = [str(to_ui_amount(e.amount, decimals)) for e in allocation.entries]
    return frame


def history_frame(records: Iterable[DistributionRecord]) -> pd.DataFrame:
    """One row per result, tagged with its request"""
    rows = []
    for record in records:
        request = record.request
        for result in record.ordered_results():
            row = result.to_dict()
            row.update({
                "request_id": request.id,
                "mint": request.mint,
                "mode": request.mode.value,
                "created_at": request.created_at.isoformat(),
                "completed_at": record.completed_at.isoformat() if record.completed_at else None,
            })
            rows.append(row)
    columns = ["request_id", "mint", "mode", "created_at", "completed_at", "recipient", "amount",
               "status", "transaction_id", "error", "attempts", "timestamp"]
    return pd.DataFrame(rows, columns=columns)


def write_frame(frame: pd.DataFrame, path: Union[str, Path], fmt: str = None) -> Path:
    """Write a frame as CSV or JSON; the format defaults to the file extension"""
    path = Path(path)
    fmt = (fmt or path.suffix.lstrip(".") or "csv").lower()
    if fmt not in FORMATS:
        raise ConfigurationError(f"Unsupported export format {fmt!r}; use one of {', '.join(FORMATS)}")

    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "csv":
        frame.to_csv(path, index=False)
    else:
        frame.to_json(path, orient="records", indent=2)
    logger.info(f"Exported {len(frame)} rows to {path}")
    return path

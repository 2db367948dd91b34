"""
Holder Drop - snapshot SPL token holders and distribute rewards to them in batches
"""

__version__ = "0.1.0"

from .allocation import SimulationReport, allocate, estimate
from .cache import FileCache, MemoryCache, SnapshotCache
from .context import RunContext
from .coordinator import BatchCoordinator
from .errors import HolderDropError
from .gateway import ChainGateway, SolanaGateway
from .ledger import FileLedger, Ledger
from .models import (
    Allocation,
    DistributionMode,
    DistributionRecord,
    DistributionRequest,
    DistributionResult,
    ResultStatus,
    Snapshot,
)
from .service import DistributionService, ValidationReport
from .snapshot import SnapshotBuilder

__all__ = [
    "Allocation",
    "BatchCoordinator",
    "ChainGateway",
    "DistributionMode",
    "DistributionRecord",
    "DistributionRequest",
    "DistributionResult",
    "DistributionService",
    "FileCache",
    "FileLedger",
    "HolderDropError",
    "Ledger",
    "MemoryCache",
    "ResultStatus",
    "RunContext",
    "SimulationReport",
    "Snapshot",
    "SnapshotBuilder",
    "SnapshotCache",
    "SolanaGateway",
    "ValidationReport",
    "allocate",
    "estimate",
]

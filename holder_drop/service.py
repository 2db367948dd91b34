import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from .allocation import EstimateSettings, SimulationReport, allocate, estimate
from .cache import FileCache, SnapshotCache
from .config import AppConfig
from .context import RunContext
from .coordinator import BatchCoordinator
from .errors import (
    BatchOutage,
    ConfigurationError,
    DuplicateRequestError,
    InsufficientFundsError,
    InvalidAmountError,
    NotFoundError,
)
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
    to_raw_amount,
)
from .retry import RetryPolicy
from .signer import KeypairSigner
from .snapshot import SnapshotBuilder
from .telegram_notifier import TelegramNotifier
from .validate_address import validate_address


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    source_balance: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


class DistributionService:
    """Entry point tying snapshot, allocation, execution and history together"""

    def __init__(self, config: AppConfig, gateway: ChainGateway, ledger: Ledger,
                 cache: Optional[SnapshotCache] = None, notifier: Optional[TelegramNotifier] = None,
                 coordinator: Optional[BatchCoordinator] = None):
        self.config = config
        self.gateway = gateway
        self.ledger = ledger
        self.cache = cache
        self.notifier = notifier or TelegramNotifier(config.telegram)
        self.snapshots = SnapshotBuilder(gateway, cache, cache_ttl=config.collection.cache_ttl)
        dist = config.distribution
        self.coordinator = coordinator or BatchCoordinator(
            gateway,
            ledger,
            max_retries=dist.max_retries,
            confirm_poll_interval=dist.confirm_poll_interval,
            confirm_timeout=dist.confirm_timeout,
            retry_policy=getattr(gateway, "retry_policy", None) or RetryPolicy(
                max_attempts=dist.max_retries, base_delay=config.network.retry_delay),
            batch_delay=dist.batch_delay,
        )
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: AppConfig) -> "DistributionService":
        """Wire up the Solana gateway, file ledger and file cache described by `config`"""
        signer = None
        if config.token.keypair_path:
            signer = KeypairSigner.from_file(config.token.keypair_path)
            if config.token.source_address and config.token.source_address != signer.public_key:
                raise ConfigurationError(
                    f"ADMIN_WALLET {config.token.source_address} does not match the keypair {signer.public_key}"
                )
        gateway = SolanaGateway(
            config.network.rpc_url,
            signer=signer,
            timeout=config.network.request_timeout,
            retry_policy=RetryPolicy(max_attempts=config.network.max_attempts,
                                     base_delay=config.network.retry_delay),
            commitment=config.network.commitment,
        )
        return cls(
            config,
            gateway,
            FileLedger(Path(config.distribution.ledger_dir)),
            FileCache(Path(config.collection.cache_dir)),
        )

    def _configured_source(self) -> Optional[str]:
        source = self.config.token.source_address
        if not source:
            signer = getattr(self.gateway, "signer", None)
            source = signer.public_key if signer is not None else None
        return source or None

    @property
    def source_address(self) -> str:
        source = self._configured_source()
        if not source:
            raise ConfigurationError("No source wallet configured (set ADMIN_WALLET or ADMIN_KEYPAIR)")
        return source

    def _distribution_mint(self, snapshot: Snapshot) -> str:
        return self.config.token.distribution_mint or snapshot.mint

    # -- snapshot and allocation -------------------------------------------

    def collect(self, mint: Optional[str] = None, threshold: Optional[int] = None,
                excluded: Optional[Iterable[str]] = None, max_holders: Optional[int] = None,
                use_cache: bool = True) -> Snapshot:
        """Snapshot holders of `mint`, defaulting every filter from configuration.

        The source wallet is always excluded; it cannot pay itself.
        """
        collection = self.config.collection
        mint = mint or self.config.token.mint
        if not mint:
            raise ConfigurationError("No token mint given (pass one or set BASE_TOKEN)")
        excluded = set(collection.exclude_addresses if excluded is None else excluded)
        source = self._configured_source()
        if source:
            excluded.add(source)
        return self.snapshots.build_snapshot(
            mint,
            threshold=collection.threshold if threshold is None else threshold,
            excluded=excluded,
            max_holders=collection.max_holders if max_holders is None else max_holders,
            use_cache=use_cache,
        )

    def simulate(self, snapshot: Snapshot, total_amount: int, mode: DistributionMode) -> Allocation:
        """Allocate raw units without touching the network"""
        return allocate(snapshot, total_amount, mode)

    def simulate_report(self, snapshot: Snapshot, total_amount: int, mode: DistributionMode,
                        batch_size: Optional[int] = None, decimals: int = 0) -> SimulationReport:
        dist = self.config.distribution
        allocation = self.simulate(snapshot, total_amount, mode)
        settings = EstimateSettings(
            fee_per_transfer=dist.fee_per_transfer,
            seconds_per_batch=dist.seconds_per_batch,
            large_amount_threshold=to_raw_amount(dist.large_amount_threshold, decimals),
            large_recipient_count=dist.large_recipient_count,
            dust_threshold=to_raw_amount(dist.dust_amount, decimals),
        )
        return estimate(allocation, batch_size or dist.batch_size, settings)

    def prepare(self, snapshot: Snapshot, total_amount: Decimal, mode: DistributionMode,
                batch_size: Optional[int] = None, request_id: Optional[str] = None) -> DistributionRequest:
        """Turn a human-unit total into a recorded-ready request"""
        mint = self._distribution_mint(snapshot)
        decimals = self.gateway.get_token_decimals(mint)
        raw_total = to_raw_amount(Decimal(total_amount), decimals)
        if raw_total <= 0:
            raise InvalidAmountError(
                f"{total_amount} is below the smallest unit of a {decimals}-decimal token",
                {"total_amount": str(total_amount)},
            )
        allocation = allocate(snapshot, raw_total, mode)
        if allocation.undistributed:
            self.logger.info(f"{allocation.undistributed} raw units stay undistributed after rounding")

        kwargs = {}
        if request_id:
            kwargs["id"] = request_id
        return DistributionRequest(
            mint=mint,
            source=self.source_address,
            total_amount=raw_total,
            mode=DistributionMode(mode),
            batch_size=batch_size or self.config.distribution.batch_size,
            entries=allocation.entries,
            decimals=decimals,
            **kwargs,
        )

    # -- execution -----------------------------------------------------------

    def validate(self, request: DistributionRequest) -> ValidationReport:
        """Check a request against the chain without sending anything"""
        report = ValidationReport()
        for entry in request.entries:
            if entry.recipient == request.source:
                report.errors.append(f"Recipient {entry.recipient} is the source wallet")
            if entry.amount <= 0:
                report.errors.append(f"Recipient {entry.recipient} has a zero amount")
        if not request.entries:
            report.errors.append("Request has no recipients")

        balance = self.gateway.get_token_balance(request.source, request.mint)
        report.source_balance = balance
        if balance < request.allocated_amount:
            report.errors.append(
                f"Insufficient balance: need {request.allocated_amount}, source holds {balance}"
            )

        unallocated = request.total_amount - request.allocated_amount
        if unallocated:
            report.warnings.append(f"{unallocated} raw units will not be distributed due to rounding")
        if len(request.entries) > self.config.distribution.large_recipient_count:
            report.warnings.append("Large number of recipients may result in longer execution time")
        return report

    def execute(self, request: DistributionRequest, context: Optional[RunContext] = None,
                on_update: Optional[Callable[[DistributionResult], None]] = None) -> DistributionRecord:
        """Run (or resume) a request and return its ledger record.

        A request id already in the ledger resumes that run: finished entries
        are skipped and transactions awaiting confirmation are checked before
        anything is resent.

        Raises:
            InsufficientFundsError: pre-flight balance check failed on a fresh run
            DuplicateRequestError: the id exists with different content
            BatchOutage: confirmation polling lost the network; resume later
        """
        context = context or RunContext()
        existing = self.ledger.get(request.id)

        if existing is None:
            report = self.validate(request)
            if not report.is_valid:
                insufficient = report.source_balance is not None and report.source_balance < request.allocated_amount
                error_type = InsufficientFundsError if insufficient else InvalidAmountError
                raise error_type("; ".join(report.errors), {"request_id": request.id})
            for warning in report.warnings:
                self.logger.warning(warning)
            self.ledger.record(request)
        else:
            if existing.request.to_dict()["entries"] != request.to_dict()["entries"] \
                    or existing.request.mint != request.mint or existing.request.source != request.source:
                raise DuplicateRequestError(
                    f"Request {request.id} already exists with different content",
                    {"request_id": request.id},
                )
            if existing.is_finalized:
                self.logger.info(f"Request {request.id} is already complete")
                return existing
            self.logger.info(
                f"Resuming request {request.id}: {existing.pending_count} of "
                f"{len(request.entries)} results unresolved"
            )
            request = existing.request

        self.notifier.notify_distribution_start(request, dry_run=self.config.dry_run)
        try:
            for result in self.coordinator.execute(request, context):
                if on_update is not None:
                    on_update(result)
        except BatchOutage as e:
            self.logger.error(f"{e}; resume with request id {request.id}")
            self.notifier.notify_failure(f"Request {request.id} paused", e)
            raise

        if context.is_cancelled:
            self.logger.warning(f"Request {request.id} cancelled; resume with its id to continue")
        self.ledger.finalize(request.id)
        record = self.ledger.get(request.id)
        self.logger.info(
            f"Request {request.id}: {record.confirmed_count} confirmed, {record.failed_count} failed, "
            f"{record.pending_count} unresolved"
        )
        self.notifier.notify_distribution_result(record)
        return record

    def resume(self, request_id: str, context: Optional[RunContext] = None,
               on_update: Optional[Callable[[DistributionResult], None]] = None) -> DistributionRecord:
        record = self.ledger.get(request_id)
        if record is None:
            raise NotFoundError(f"No distribution request {request_id}", {"request_id": request_id})
        return self.execute(record.request, context=context, on_update=on_update)

    def history(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                mint: Optional[str] = None, status: Optional[ResultStatus] = None) -> Iterator[DistributionRecord]:
        if mint is not None:
            validate_address(mint, "mint")
        return self.ledger.query(start=start, end=end, mint=mint, status=status)

    def clear_cache(self) -> None:
        self.snapshots.clear_cache()
        self.logger.info("Snapshot cache cleared")

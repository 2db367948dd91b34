"""
Batched execution of a distribution request.

Entries are split into consecutive batches of `request.batch_size`. Each
batch runs on its own bounded thread pool and batches run one after the
other. Every status transition is written to the ledger before it is handed
to the caller, so the ledger is always at least as current as anything the
caller has seen.
"""
import logging
import queue
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator, List, Optional, Tuple

from .context import RunContext
from .errors import NON_TRANSIENT_ERRORS, BatchOutage, HolderDropError, NetworkError, NotFoundError
from .gateway import ChainGateway, Confirmation, ConfirmationState
from .ledger import Ledger
from .models import AllocationEntry, DistributionRequest, DistributionResult, ResultStatus
from .retry import RetryPolicy

_DONE = object()


class BatchCoordinator:
    def __init__(self, gateway: ChainGateway, ledger: Ledger, max_retries: int = 3,
                 confirm_poll_interval: float = 2.0, confirm_timeout: float = 60.0,
                 retry_policy: Optional[RetryPolicy] = None, batch_delay: float = 0.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.gateway = gateway
        self.ledger = ledger
        self.max_retries = max_retries
        self.confirm_poll_interval = confirm_poll_interval
        self.confirm_timeout = confirm_timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=max_retries)
        self.batch_delay = batch_delay
        self.sleep = sleep
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def partition(entries: Tuple[AllocationEntry, ...], batch_size: int) -> List[Tuple[AllocationEntry, ...]]:
        return [entries[i:i + batch_size] for i in range(0, len(entries), batch_size)]

    def execute(self, request: DistributionRequest, context: Optional[RunContext] = None
                ) -> Iterator[DistributionResult]:
        """Run every non-terminal entry of a recorded request.

        Yields each result transition after it has been written to the
        ledger. Stops early, leaving the request resumable, when the context
        is cancelled or when confirmation polling loses the network.

        Raises:
            NotFoundError: the request was never recorded
            BatchOutage: polling failed after the gateway's own retries
        """
        context = context or RunContext()
        record = self.ledger.get(request.id)
        if record is None:
            raise NotFoundError(f"Request {request.id} is not in the ledger", {"request_id": request.id})

        batches = self.partition(request.entries, request.batch_size)
        self.logger.info(
            f"[{context.run_id}] Executing request {request.id}: "
            f"{len(request.entries)} entries in {len(batches)} batches"
        )

        ran_batch = False
        for number, batch in enumerate(batches, 1):
            todo = [record.results[e.recipient] for e in batch if not record.results[e.recipient].is_terminal]
            if not todo:
                self.logger.debug(f"[{context.run_id}] Batch {number} already complete, skipping")
                continue
            if context.is_cancelled:
                self.logger.warning(f"[{context.run_id}] Cancelled before batch {number}/{len(batches)}")
                return
            if ran_batch and self.batch_delay > 0:
                self.sleep(self.batch_delay)

            self.logger.info(f"[{context.run_id}] Batch {number}/{len(batches)}: {len(todo)} transfers")
            outage = yield from self._run_batch(request, todo, context)
            ran_batch = True
            if outage:
                raise BatchOutage(
                    f"Lost the network while confirming batch {number} of request {request.id}",
                    {"request_id": request.id, "batch": number},
                )

    def _run_batch(self, request: DistributionRequest, todo: List[DistributionResult],
                   context: RunContext):
        updates: "queue.Queue" = queue.Queue()

        def emit(result: DistributionResult) -> DistributionResult:
            self.ledger.update_result(request.id, result)
            context.count(result.status)
            updates.put(result)
            return result

        def work(result: DistributionResult) -> bool:
            try:
                return self._process(request, result, context, emit)
            finally:
                updates.put(_DONE)

        with ThreadPoolExecutor(max_workers=min(request.batch_size, len(todo)),
                                thread_name_prefix=f"batch-{context.run_id}") as pool:
            futures = [pool.submit(work, result) for result in todo]
            remaining = len(futures)
            while remaining:
                item = updates.get()
                if item is _DONE:
                    remaining -= 1
                else:
                    yield item

        # Re-raises anything unexpected from any worker
        outages = [f.result() for f in futures]
        return any(outages)

    def _process(self, request: DistributionRequest, result: DistributionResult,
                 context: RunContext, emit: Callable[[DistributionResult], DistributionResult]) -> bool:
        """Drive one entry to a terminal status; True means a polling outage"""
        current = result

        if current.status == ResultStatus.AWAITING_CONFIRMATION and current.transaction_id:
            # Resumed after a crash or outage: the transfer may already have landed
            try:
                confirmation = self._await_confirmation(current.transaction_id, context)
            except NetworkError as e:
                self.logger.error(f"Still cannot confirm {current.transaction_id}: {e}")
                return True
            current = self._settle(current, confirmation, emit)
            if current.is_terminal:
                return False
        elif current.status == ResultStatus.SUBMITTING:
            self.logger.warning(
                f"Resending to {current.recipient}: an earlier run stopped mid-submit and may have sent already"
            )

        while True:
            if current.attempts >= self.max_retries:
                emit(current.advance(ResultStatus.FAILED, error=current.error or "Retries exhausted"))
                return False
            if current.attempts > 0:
                self.sleep(self.retry_policy.delay_for(current.attempts))

            current = emit(current.advance(ResultStatus.SUBMITTING, attempts=current.attempts + 1))
            try:
                signature = self.gateway.submit_transfer(request.source, current.recipient,
                                                         request.mint, current.amount)
            except NON_TRANSIENT_ERRORS as e:
                self.logger.error(f"Transfer to {current.recipient} rejected: {e}")
                emit(current.advance(ResultStatus.FAILED, error=str(e)))
                return False
            except NetworkError as e:
                self.logger.warning(f"Transfer to {current.recipient} failed on attempt {current.attempts}: {e}")
                current = self._retry_or_fail(current, str(e), emit)
                if current.is_terminal:
                    return False
                continue
            except HolderDropError as e:
                self.logger.error(f"Transfer to {current.recipient} failed: {e}")
                emit(current.advance(ResultStatus.FAILED, error=str(e)))
                return False

            current = emit(current.advance(ResultStatus.AWAITING_CONFIRMATION,
                                           transaction_id=signature, error=None))
            try:
                confirmation = self._await_confirmation(signature, context)
            except NetworkError as e:
                self.logger.error(f"Cannot confirm {signature} for {current.recipient}: {e}")
                return True
            current = self._settle(current, confirmation, emit)
            if current.is_terminal:
                return False

    def _settle(self, current: DistributionResult, confirmation: Optional[Confirmation],
                emit: Callable[[DistributionResult], DistributionResult]) -> DistributionResult:
        if confirmation is None:
            return self._retry_or_fail(current, "Not confirmed before the timeout", emit)
        if confirmation.state == ConfirmationState.CONFIRMED:
            self.logger.info(f"Confirmed {current.amount} to {current.recipient} ({current.transaction_id})")
            return emit(current.advance(ResultStatus.CONFIRMED, error=None))
        if confirmation.retryable:
            return self._retry_or_fail(current, confirmation.reason or "Transaction expired", emit)
        self.logger.error(f"Transfer to {current.recipient} failed on chain: {confirmation.reason}")
        return emit(current.advance(ResultStatus.FAILED, error=confirmation.reason or "Transaction failed"))

    def _retry_or_fail(self, current: DistributionResult, error: str,
                       emit: Callable[[DistributionResult], DistributionResult]) -> DistributionResult:
        if current.attempts < self.max_retries:
            return emit(current.advance(ResultStatus.RETRY_PENDING, error=error))
        self.logger.error(f"Giving up on {current.recipient} after {current.attempts} attempts: {error}")
        return emit(current.advance(ResultStatus.FAILED, error=error))

    def _await_confirmation(self, signature: str, context: RunContext) -> Optional[Confirmation]:
        """Poll until the transaction is final; None on timeout"""
        timeout = context.confirm_timeout if context.confirm_timeout is not None else self.confirm_timeout
        deadline = self.clock() + timeout
        while True:
            confirmation = self.gateway.confirm_transaction(signature)
            if confirmation.state != ConfirmationState.PENDING:
                return confirmation
            remaining = deadline - self.clock()
            if remaining <= 0:
                self.logger.warning(f"Transaction {signature} not confirmed within {timeout}s")
                return None
            self.sleep(min(self.confirm_poll_interval, remaining))

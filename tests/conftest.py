import threading
from typing import Dict, List, Optional

import base58
import pytest

from holder_drop.config import AppConfig, DistributionConfig, NetworkConfig, TokenConfig
from holder_drop.coordinator import BatchCoordinator
from holder_drop.gateway import ChainGateway, Confirmation, ConfirmationState, TokenAccountPage
from holder_drop.ledger import FileLedger
from holder_drop.models import HolderBalance
from holder_drop.retry import RetryPolicy


def make_address(seed: int) -> str:
    return base58.b58encode(bytes([seed % 256]) * 32).decode()


# Sorted so index order matches snapshot order
ADDRESSES = sorted(make_address(i) for i in range(1, 60))
MINT = make_address(200)
SOURCE = make_address(201)


class FakeGateway(ChainGateway):
    """In-process chain: scripted pages, submissions and confirmations"""

    def __init__(self, pages=None, decimals: int = 0, balance: int = 10 ** 12):
        self.pages: List = pages if pages is not None else [[]]
        self.decimals = decimals
        self.balance = balance
        self.fetch_calls = 0
        self.submissions: List[str] = []
        self.confirm_calls: List[str] = []
        self.submit_script: Dict[str, List] = {}
        self.confirm_script: Dict[str, List] = {}
        self._tx_owner: Dict[str, str] = {}
        self._lock = threading.Lock()

    def set_holders(self, balances):
        self.pages = [[HolderBalance(ADDRESSES[i], b) for i, b in enumerate(balances)]]

    def fetch_token_accounts(self, mint: str, cursor: Optional[str] = None) -> TokenAccountPage:
        self.fetch_calls += 1
        index = int(cursor) if cursor else 0
        page = self.pages[index]
        if isinstance(page, Exception):
            raise page
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return TokenAccountPage(accounts=list(page), next_cursor=next_cursor)

    def _next(self, script: Dict[str, List], key: str):
        steps = script.get(key)
        if not steps:
            return None
        return steps.pop(0) if len(steps) > 1 else steps[0]

    def submit_transfer(self, source: str, destination: str, mint: str, amount: int) -> str:
        with self._lock:
            self.submissions.append(destination)
            attempt = self.submissions.count(destination)
            outcome = self._next(self.submit_script, destination)
        if isinstance(outcome, Exception):
            raise outcome
        tx = f"tx-{destination[:10]}-{attempt}"
        with self._lock:
            self._tx_owner[tx] = destination
        return tx

    def confirm_transaction(self, transaction_id: str) -> Confirmation:
        with self._lock:
            self.confirm_calls.append(transaction_id)
            recipient = self._tx_owner.get(transaction_id, transaction_id)
            outcome = self._next(self.confirm_script, recipient)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or Confirmation(ConfirmationState.CONFIRMED)

    def get_token_decimals(self, mint: str) -> int:
        return self.decimals

    def get_token_balance(self, owner: str, mint: str) -> int:
        return self.balance

    def submission_count(self, recipient: str) -> int:
        return self.submissions.count(recipient)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(tmp_path):
    return FileLedger(tmp_path / "ledger")


@pytest.fixture
def coordinator(gateway, ledger):
    return BatchCoordinator(
        gateway,
        ledger,
        max_retries=3,
        confirm_poll_interval=0.01,
        confirm_timeout=5.0,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        network=NetworkConfig(rpc_url="http://localhost:8899"),
        token=TokenConfig(mint=MINT, source_address=SOURCE),
        distribution=DistributionConfig(
            batch_size=2,
            confirm_poll_interval=0.01,
            confirm_timeout=5.0,
            batch_delay=0.0,
            ledger_dir=str(tmp_path / "ledger"),
        ),
    )

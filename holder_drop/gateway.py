import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .errors import (
    ConfigurationError,
    HolderDropError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidAmountError,
    NetworkError,
    NotFoundError,
)
from .models import HolderBalance
from .retry import RetryPolicy
from .signer import SignedTransfer, TransferSigner
from .validate_address import validate_address

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
TOKEN_ACCOUNT_SIZE = 165

DEFAULT_ENDPOINTS = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SEND_TRANSACTION_PREFLIGHT_FAILURE = -32002
# Node-side conditions that clear up on their own
TRANSIENT_RPC_CODES = {-32004, -32005, -32007, -32014, -32016}

TRANSIENT_SEND_MARKERS = ("BlockhashNotFound", "Blockhash not found")
# The node already has this exact transaction; the send may have landed
ALREADY_PROCESSED_MARKERS = ("AlreadyProcessed", "already been processed")
INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds", "InsufficientFunds", "insufficient lamports")


class RpcError(HolderDropError):
    """Non-transient JSON-RPC error returned by the node"""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}", {"code": code, "data": data})
        self.code = code
        self.data = data


class ConfirmationState(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class Confirmation:
    state: ConfirmationState
    reason: Optional[str] = None
    retryable: bool = False


@dataclass(frozen=True)
class TokenAccountPage:
    accounts: List[HolderBalance]
    next_cursor: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.next_cursor is None


class ChainGateway(ABC):
    """The only component allowed to talk to the network"""

    @abstractmethod
    def fetch_token_accounts(self, mint: str, cursor: Optional[str] = None) -> TokenAccountPage:
        ...

    @abstractmethod
    def submit_transfer(self, source: str, destination: str, mint: str, amount: int) -> str:
        ...

    @abstractmethod
    def confirm_transaction(self, transaction_id: str) -> Confirmation:
        ...

    @abstractmethod
    def get_token_decimals(self, mint: str) -> int:
        ...

    @abstractmethod
    def get_token_balance(self, owner: str, mint: str) -> int:
        ...


class SolanaGateway(ChainGateway):
    """Solana JSON-RPC gateway over HTTP.

    Every call has an explicit timeout. Timeouts, connection failures, HTTP
    429/5xx and node-unhealthy RPC codes are raised as `NetworkError` and
    retried by `retry_policy`; everything else propagates on the first try.
    """

    def __init__(self, rpc_url: str, signer: Optional[TransferSigner] = None,
                 timeout: float = 30.0, retry_policy: Optional[RetryPolicy] = None,
                 commitment: str = "confirmed", page_limit: int = 1000,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.signer = signer
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.commitment = commitment
        self.page_limit = page_limit
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._use_das = True
        self._decimals: Dict[str, int] = {}
        self._programs: Dict[str, str] = {}

    # -- transport ---------------------------------------------------------

    def _next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def _post(self, method: str, params: Any) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"{method} timed out after {self.timeout}s",
                               {"method": method, "timed_out": True}) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} request failed: {e}", {"method": method}) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(
                f"{method} returned HTTP {response.status_code}",
                {"method": method, "status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise HolderDropError(
                f"{method} rejected with HTTP {response.status_code}: {response.text[:200]}",
                {"method": method, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"{method} returned a non-JSON response", {"method": method}) from e

        error = data.get("error")
        if error:
            code = error.get("code", 0) if isinstance(error, dict) else 0
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if code in TRANSIENT_RPC_CODES:
                raise NetworkError(f"{method}: {message}", {"method": method, "code": code})
            raise RpcError(code, message, error.get("data") if isinstance(error, dict) else None)
        return data.get("result")

    def _rpc(self, method: str, params: Any) -> Any:
        return self.retry_policy.call(lambda: self._post(method, params), description=method)

    # -- reads ---------------------------------------------------------------

    def _token_program(self, mint: str) -> str:
        if mint in self._programs:
            return self._programs[mint]
        result = self._rpc("getAccountInfo", [mint, {"encoding": "base64"}])
        value = (result or {}).get("value")
        if value is None:
            raise NotFoundError(f"Mint {mint} does not exist", {"mint": mint})
        owner = value.get("owner")
        if owner not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            raise NotFoundError(f"Account {mint} is not a token mint (owner {owner})", {"mint": mint})
        self._programs[mint] = owner
        self.logger.debug(f"Mint {mint} is owned by token program {owner}")
        return owner

    def fetch_token_accounts(self, mint: str, cursor: Optional[str] = None) -> TokenAccountPage:
        validate_address(mint, "mint")
        if cursor is None:
            self._token_program(mint)

        if not self._use_das:
            return self._fetch_program_accounts(mint)

        params: Dict[str, Any] = {
            "mint": mint,
            "limit": self.page_limit,
            "displayOptions": {"showZeroBalance": False},
        }
        if cursor:
            params["cursor"] = cursor
        try:
            result = self._rpc("getTokenAccounts", params) or {}
        except RpcError as e:
            if e.code != METHOD_NOT_FOUND:
                raise
            self.logger.info("Endpoint has no getTokenAccounts; falling back to getProgramAccounts")
            self._use_das = False
            return self._fetch_program_accounts(mint)

        accounts = []
        for account in result.get("token_accounts") or []:
            owner = account.get("owner")
            amount = int(account.get("amount") or 0)
            if owner and amount > 0:
                accounts.append(HolderBalance(owner, amount))

        next_cursor = result.get("cursor") or None
        if next_cursor == cursor:
            next_cursor = None
        self.logger.debug(f"Fetched {len(accounts)} token accounts for {mint} (next cursor: {next_cursor})")
        return TokenAccountPage(accounts=accounts, next_cursor=next_cursor)

    def _fetch_program_accounts(self, mint: str) -> TokenAccountPage:
        program = self._token_program(mint)
        filters: List[Dict[str, Any]] = [{"memcmp": {"offset": 0, "bytes": mint}}]
        if program == TOKEN_PROGRAM_ID:
            filters.insert(0, {"dataSize": TOKEN_ACCOUNT_SIZE})
        result = self._rpc("getProgramAccounts", [program, {"encoding": "jsonParsed", "filters": filters}]) or []

        accounts = []
        for item in result:
            try:
                info = item["account"]["data"]["parsed"]["info"]
                owner = info["owner"]
                amount = int(info["tokenAmount"]["amount"])
            except (KeyError, TypeError, ValueError):
                self.logger.warning(f"Skipping undecodable token account {item.get('pubkey')}")
                continue
            if amount > 0:
                accounts.append(HolderBalance(owner, amount))
        self.logger.info(f"Fetched {len(accounts)} token accounts for {mint} via getProgramAccounts")
        return TokenAccountPage(accounts=accounts, next_cursor=None)

    def get_token_decimals(self, mint: str) -> int:
        if mint in self._decimals:
            return self._decimals[mint]
        try:
            result = self._rpc("getTokenSupply", [mint])
        except RpcError as e:
            if e.code == INVALID_PARAMS:
                raise NotFoundError(f"Mint {mint} does not exist: {e.message}", {"mint": mint}) from e
            raise
        decimals = int(result["value"]["decimals"])
        self._decimals[mint] = decimals
        return decimals

    def get_token_balance(self, owner: str, mint: str) -> int:
        validate_address(owner, "owner")
        result = self._rpc("getTokenAccountsByOwner", [owner, {"mint": mint}, {"encoding": "jsonParsed"}])
        total = 0
        for item in (result or {}).get("value") or []:
            try:
                total += int(item["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"])
            except (KeyError, TypeError, ValueError):
                self.logger.warning(f"Could not read balance of token account {item.get('pubkey')}")
        return total

    def get_latest_blockhash(self) -> str:
        result = self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    # -- writes --------------------------------------------------------------

    def submit_transfer(self, source: str, destination: str, mint: str, amount: int) -> str:
        validate_address(source, "source")
        validate_address(destination, "destination")
        validate_address(mint, "mint")
        if amount <= 0:
            raise InvalidAmountError(f"Transfer amount must be positive, got {amount}", {"amount": amount})
        if self.signer is None:
            raise ConfigurationError("No transfer signer configured for this gateway")
        if source != self.signer.public_key:
            raise InvalidAddressError(
                f"Source {source} does not match the signing key {self.signer.public_key}",
                {"source": source},
            )

        decimals = self.get_token_decimals(mint)
        program = self._token_program(mint)
        blockhash = self.get_latest_blockhash()
        signed = self.signer.sign_transfer(destination, mint, amount, decimals, blockhash, program)
        return self._send(signed, destination, amount)

    def _send(self, signed: SignedTransfer, destination: str, amount: int) -> str:
        """Send a signed transfer.

        Resends by the retry policy carry the same bytes, so they can never
        pay twice. When the outcome is unknown (the send timed out, or the
        node reports it already has the transaction) the signature is
        returned so the caller confirms it instead of signing a new one.
        """
        try:
            signature = self._rpc("sendTransaction", [signed.payload, {
                "encoding": "base64",
                "preflightCommitment": self.commitment,
            }])
        except RpcError as e:
            detail = f"{e.message} {e.data}"
            if any(marker in detail for marker in ALREADY_PROCESSED_MARKERS):
                self.logger.info(f"Transfer to {destination} already processed as {signed.signature}")
                return signed.signature
            if any(marker in detail for marker in INSUFFICIENT_FUNDS_MARKERS):
                raise InsufficientFundsError(
                    f"Insufficient funds sending {amount} to {destination}",
                    {"destination": destination, "amount": amount},
                ) from e
            if any(marker in detail for marker in TRANSIENT_SEND_MARKERS):
                raise NetworkError(f"Transfer to {destination} not accepted: {e.message}") from e
            raise
        except NetworkError as e:
            if not e.details.get("timed_out"):
                raise
            self.logger.warning(
                f"Sending to {destination} timed out; checking {signed.signature} before any resend"
            )
            return signed.signature
        self.logger.info(f"Submitted transfer of {amount} to {destination}: {signature}")
        return signature

    def confirm_transaction(self, transaction_id: str) -> Confirmation:
        result = self._rpc("getSignatureStatuses", [[transaction_id], {"searchTransactionHistory": True}])
        statuses = (result or {}).get("value") or [None]
        status = statuses[0]
        if status is None:
            return Confirmation(ConfirmationState.PENDING)
        if status.get("err") is not None:
            reason = str(status["err"])
            retryable = any(marker in reason for marker in TRANSIENT_SEND_MARKERS)
            return Confirmation(ConfirmationState.FAILED, reason=reason, retryable=retryable)

        level = status.get("confirmationStatus")
        if level == "finalized" or (level == "confirmed" and self.commitment != "finalized"):
            return Confirmation(ConfirmationState.CONFIRMED)
        return Confirmation(ConfirmationState.PENDING)

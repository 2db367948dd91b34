from typing import Any, Dict, Optional


class HolderDropError(Exception):
    """Base exception for distribution engine errors"""
    exit_code = 1

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NetworkError(HolderDropError):
    """Transient network failure; the only retryable error kind"""
    exit_code = 4


class NotFoundError(HolderDropError):
    """Mint, account or ledger record does not exist"""
    exit_code = 6


class InvalidAddressError(HolderDropError):
    exit_code = 2


class InvalidAmountError(HolderDropError):
    exit_code = 2


class InsufficientFundsError(HolderDropError):
    exit_code = 7


class DuplicateRequestError(HolderDropError):
    exit_code = 6


class StatusRegressionError(HolderDropError):
    """Raised when a write would move a result out of a terminal status"""
    exit_code = 6


class EmptySnapshotError(HolderDropError):
    exit_code = 2


class ConfigurationError(HolderDropError):
    exit_code = 3


NON_TRANSIENT_ERRORS = (InsufficientFundsError, InvalidAddressError, InvalidAmountError)


class BatchOutage(NetworkError):
    """The network stayed unreachable while results were awaiting confirmation"""

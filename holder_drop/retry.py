import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from .errors import NetworkError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff, applied only to the configured error kinds"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retry_on: Tuple[Type[BaseException], ...] = (NetworkError,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt"""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retry_on)

    def call(self, func: Callable[[], T], description: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return func()
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.debug(f"{description} attempt {attempt} failed ({e}); retrying in {delay:.2f}s")
                time.sleep(delay)
                attempt += 1

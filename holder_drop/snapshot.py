import logging
from typing import Dict, Iterable, List, Optional

from .cache import SnapshotCache
from .errors import HolderDropError, InvalidAmountError
from .gateway import ChainGateway
from .models import HolderBalance, Snapshot, SnapshotFilters, utc_now
from .validate_address import validate_address

DEFAULT_CACHE_TTL = 1800
# Upper bound on pages per snapshot; a node that keeps handing out cursors is broken
MAX_PAGES = 10_000


class SnapshotBuilder:
    """Builds filtered, ordered holder snapshots for a mint"""

    def __init__(self, gateway: ChainGateway, cache: Optional[SnapshotCache] = None,
                 cache_ttl: int = DEFAULT_CACHE_TTL):
        self.gateway = gateway
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.logger = logging.getLogger(__name__)

    def build_snapshot(self, mint: str, threshold: int = 0, excluded: Iterable[str] = (),
                       max_holders: Optional[int] = None, use_cache: bool = True) -> Snapshot:
        """Capture current holders of `mint`.

        Args:
            mint: Reference token mint address
            threshold: Minimum raw balance to qualify (inclusive)
            excluded: Addresses that never qualify
            max_holders: Keep only the largest holders when set
            use_cache: Serve from and store into the cache

        Returns:
            Snapshot sorted by holder address

        Raises:
            NetworkError: paging failed; nothing is cached
            NotFoundError: the mint does not exist
        """
        validate_address(mint, "mint")
        excluded_set = frozenset(validate_address(a, "excluded address") for a in excluded)
        if threshold < 0:
            raise InvalidAmountError("Threshold must be non-negative", {"threshold": threshold})
        if max_holders is not None and max_holders <= 0:
            raise InvalidAmountError("Max holders must be positive", {"max_holders": max_holders})

        filters = SnapshotFilters(threshold=threshold, excluded=excluded_set, max_holders=max_holders)
        key = filters.cache_key(mint)

        if use_cache and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                self.logger.info(f"Returning cached snapshot for {mint} ({cached.holder_count} holders)")
                return cached

        raw = self._fetch_all(mint)
        holders = self._deduplicate(raw)
        eligible = [
            h for h in holders.values()
            if h.address not in excluded_set and h.balance >= threshold and h.balance > 0
        ]
        eligible.sort(key=lambda h: h.address)

        truncated = False
        if max_holders is not None and len(eligible) > max_holders:
            largest = sorted(eligible, key=lambda h: (-h.balance, h.address))[:max_holders]
            eligible = sorted(largest, key=lambda h: h.address)
            truncated = True
            self.logger.info(f"Truncated holder list to the largest {max_holders} balances")

        snapshot = Snapshot(
            mint=mint,
            captured_at=utc_now(),
            holders=tuple(eligible),
            filters=filters,
            truncated=truncated,
            ttl_seconds=self.cache_ttl,
        )

        if use_cache and self.cache is not None:
            try:
                self.cache.put(key, snapshot, self.cache_ttl)
            except OSError as e:
                self.logger.warning(f"Could not cache snapshot of {mint}: {e}")

        self.logger.info(
            f"Snapshot of {mint}: {len(raw)} accounts fetched, {len(holders)} unique, "
            f"{snapshot.holder_count} eligible (threshold {threshold}, {len(excluded_set)} excluded)"
        )
        return snapshot

    def _fetch_all(self, mint: str) -> List[HolderBalance]:
        accounts: List[HolderBalance] = []
        cursor = None
        for page_number in range(1, MAX_PAGES + 1):
            page = self.gateway.fetch_token_accounts(mint, cursor)
            accounts.extend(page.accounts)
            self.logger.debug(f"Page {page_number}: {len(page.accounts)} accounts")
            if page.done:
                return accounts
            cursor = page.next_cursor
        raise HolderDropError(f"Gave up paging {mint} after {MAX_PAGES} pages", {"mint": mint})

    def _deduplicate(self, accounts: List[HolderBalance]) -> Dict[str, HolderBalance]:
        """Keep the last balance seen for each address"""
        unique: Dict[str, HolderBalance] = {}
        for holder in accounts:
            previous = unique.get(holder.address)
            if previous is not None and previous.balance != holder.balance:
                self.logger.warning(
                    f"Address {holder.address} returned twice ({previous.balance} then "
                    f"{holder.balance}); keeping the last value"
                )
            unique[holder.address] = holder
        return unique

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

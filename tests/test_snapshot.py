from datetime import timedelta

import pytest

from holder_drop.cache import FileCache, MemoryCache
from holder_drop.errors import InvalidAddressError, InvalidAmountError, NetworkError
from holder_drop.models import HolderBalance, utc_now
from holder_drop.snapshot import SnapshotBuilder

from .conftest import ADDRESSES, MINT, FakeGateway

A, B, C, D = ADDRESSES[:4]


def test_snapshot_sorted_and_filtered():
    gateway = FakeGateway(pages=[[HolderBalance(C, 300), HolderBalance(A, 100), HolderBalance(B, 200)]])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT, threshold=200)

    assert [h.address for h in snapshot.holders] == [B, C]
    assert all(h.balance >= 200 for h in snapshot.holders)
    assert not snapshot.truncated


def test_threshold_is_inclusive():
    gateway = FakeGateway(pages=[[HolderBalance(A, 99), HolderBalance(B, 100)]])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT, threshold=100)
    assert [h.address for h in snapshot.holders] == [B]


def test_excluded_addresses_never_qualify():
    gateway = FakeGateway(pages=[[HolderBalance(A, 100), HolderBalance(B, 200)]])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT, excluded=[B])
    assert [h.address for h in snapshot.holders] == [A]


def test_zero_balances_are_dropped():
    gateway = FakeGateway(pages=[[HolderBalance(A, 0), HolderBalance(B, 5)]])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT)
    assert [h.address for h in snapshot.holders] == [B]


def test_max_holders_keeps_largest():
    gateway = FakeGateway(pages=[[HolderBalance(A, 100), HolderBalance(B, 200), HolderBalance(C, 300)]])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT, max_holders=2)

    assert [h.balance for h in snapshot.holders] == [200, 300]
    assert snapshot.truncated


def test_max_holders_breaks_ties_by_address():
    gateway = FakeGateway(pages=[[
        HolderBalance(D, 200), HolderBalance(A, 100), HolderBalance(C, 200), HolderBalance(B, 200),
    ]])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT, max_holders=2)

    assert [h.address for h in snapshot.holders] == [B, C]
    assert snapshot.truncated


def test_pages_are_concatenated_and_duplicates_keep_last():
    gateway = FakeGateway(pages=[
        [HolderBalance(A, 100), HolderBalance(B, 50)],
        [HolderBalance(C, 10), HolderBalance(B, 75)],
    ])
    snapshot = SnapshotBuilder(gateway).build_snapshot(MINT)

    assert gateway.fetch_calls == 2
    assert [(h.address, h.balance) for h in snapshot.holders] == [(A, 100), (B, 75), (C, 10)]


def test_cache_hit_skips_gateway():
    gateway = FakeGateway(pages=[[HolderBalance(A, 100)]])
    builder = SnapshotBuilder(gateway, MemoryCache())

    first = builder.build_snapshot(MINT)
    second = builder.build_snapshot(MINT)

    assert first == second
    assert gateway.fetch_calls == 1


def test_different_filters_use_different_cache_entries():
    gateway = FakeGateway(pages=[[HolderBalance(A, 100), HolderBalance(B, 200)]])
    builder = SnapshotBuilder(gateway, MemoryCache())

    builder.build_snapshot(MINT)
    snapshot = builder.build_snapshot(MINT, threshold=150)

    assert gateway.fetch_calls == 2
    assert snapshot.holder_count == 1


def test_expired_cache_entry_refetches():
    now = [utc_now()]
    gateway = FakeGateway(pages=[[HolderBalance(A, 100)]])
    builder = SnapshotBuilder(gateway, MemoryCache(clock=lambda: now[0]), cache_ttl=60)

    builder.build_snapshot(MINT)
    now[0] += timedelta(seconds=61)
    builder.build_snapshot(MINT)

    assert gateway.fetch_calls == 2


def test_network_failure_caches_nothing():
    cache = MemoryCache()
    gateway = FakeGateway(pages=[[HolderBalance(A, 100)], NetworkError("connection reset")])
    builder = SnapshotBuilder(gateway, cache)

    with pytest.raises(NetworkError):
        builder.build_snapshot(MINT)

    gateway.pages = [[HolderBalance(A, 100)]]
    gateway.fetch_calls = 0
    builder.build_snapshot(MINT)
    assert gateway.fetch_calls == 1


def test_use_cache_false_bypasses_cache():
    gateway = FakeGateway(pages=[[HolderBalance(A, 100)]])
    builder = SnapshotBuilder(gateway, MemoryCache())

    builder.build_snapshot(MINT)
    builder.build_snapshot(MINT, use_cache=False)
    assert gateway.fetch_calls == 2


def test_invalid_inputs():
    builder = SnapshotBuilder(FakeGateway())
    with pytest.raises(InvalidAddressError):
        builder.build_snapshot("not-a-mint")
    with pytest.raises(InvalidAmountError):
        builder.build_snapshot(MINT, threshold=-1)
    with pytest.raises(InvalidAmountError):
        builder.build_snapshot(MINT, max_holders=0)


def test_file_cache_with_many_exclusions(tmp_path):
    gateway = FakeGateway(pages=[[HolderBalance(A, 100), HolderBalance(ADDRESSES[15], 50)]])
    builder = SnapshotBuilder(gateway, FileCache(tmp_path))

    first = builder.build_snapshot(MINT, excluded=ADDRESSES[10:20])
    second = builder.build_snapshot(MINT, excluded=ADDRESSES[10:20])

    assert [h.address for h in first.holders] == [A]
    assert second == first
    assert gateway.fetch_calls == 1


class UnwritableCache(MemoryCache):
    def put(self, key, snapshot, ttl_seconds):
        raise OSError(28, "No space left on device")


def test_cache_write_failure_still_returns_snapshot():
    gateway = FakeGateway(pages=[[HolderBalance(A, 100)]])
    builder = SnapshotBuilder(gateway, UnwritableCache())

    snapshot = builder.build_snapshot(MINT)

    assert [h.address for h in snapshot.holders] == [A]

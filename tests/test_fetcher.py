"""Tests for the targeted single-order fetcher."""

import asyncio

import pytest

from conftest import GUID_A, GUID_B, GUID_C, make_order
from ordersync.services.orders_api.mock import MockOrdersApi
from ordersync.sync.cancellation import CancellationToken
from ordersync.sync.errors import OperationCancelled
from ordersync.sync.fetcher import TargetedFetcher


class ConcurrencyProbeApi(MockOrdersApi):
    """Tracks how many fetch_order calls overlap."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.peak = 0

    async def fetch_order(self, guid, token=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().fetch_order(guid, token)
        finally:
            self.in_flight -= 1


@pytest.fixture
def fetcher(api):
    return TargetedFetcher(api, concurrency_limit=4, max_retries=2, backoff_ms=0)


@pytest.mark.asyncio
async def test_found_missing_and_voided(fetcher, api):
    api.remove_order(GUID_B)
    api.void_order(GUID_C)

    result = await fetcher.fetch_by_guids([GUID_A, GUID_B, GUID_C], CancellationToken())

    assert result.seen == {GUID_A}
    assert [order["guid"] for order in result.orders] == [GUID_A]
    assert result.removed == {GUID_B, GUID_C}
    assert result.unresolved == set()
    assert result.attempted == {GUID_A, GUID_B, GUID_C}


@pytest.mark.asyncio
async def test_transient_failures_are_retried(fetcher, api):
    api.queue_failure("fetch_order", 503, count=2)

    result = await fetcher.fetch_by_guids([GUID_A], CancellationToken())

    assert result.seen == {GUID_A}
    assert api.calls_to("fetch_order") == [GUID_A, GUID_A, GUID_A]


@pytest.mark.asyncio
async def test_exhausted_retries_leave_guid_unresolved(fetcher, api):
    api.queue_failure("fetch_order", 503, count=3)

    result = await fetcher.fetch_by_guids([GUID_A], CancellationToken())

    assert result.unresolved == {GUID_A}
    assert result.removed == set()
    assert len(api.calls_to("fetch_order")) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(fetcher, api):
    api.queue_failure("fetch_order", 400)

    result = await fetcher.fetch_by_guids([GUID_A], CancellationToken())

    assert result.unresolved == {GUID_A}
    assert len(api.calls_to("fetch_order")) == 1


@pytest.mark.asyncio
async def test_per_call_retry_override(fetcher, api):
    api.queue_failure("fetch_order", 503, count=1)

    result = await fetcher.fetch_by_guids([GUID_A], CancellationToken(), max_retries=0)

    assert result.unresolved == {GUID_A}


@pytest.mark.asyncio
async def test_duplicates_and_blanks_are_dropped(fetcher, api):
    result = await fetcher.fetch_by_guids([GUID_A, GUID_A, "", "  ", None], CancellationToken())

    assert result.seen == {GUID_A}
    assert api.calls_to("fetch_order") == [GUID_A]


@pytest.mark.asyncio
async def test_empty_input():
    fetcher = TargetedFetcher(MockOrdersApi())
    result = await fetcher.fetch_by_guids([], CancellationToken())
    assert result.attempted == set()


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    guids = [f"dddddddd-0000-4000-8000-00000000000{index}" for index in range(5)]
    api = ConcurrencyProbeApi(orders=[make_order(guid) for guid in guids])
    fetcher = TargetedFetcher(api, concurrency_limit=2, backoff_ms=0)

    result = await fetcher.fetch_by_guids(guids, CancellationToken())

    assert result.seen == set(guids)
    assert api.peak == 2


@pytest.mark.asyncio
async def test_cancelled_token_aborts(fetcher):
    token = CancellationToken()
    token.cancel("superseded")

    with pytest.raises(OperationCancelled):
        await fetcher.fetch_by_guids([GUID_A], token)

import asyncio

import pytest

from flashcycle.aggregator import DEXQuoteAggregator
from flashcycle.state import SCORE_MAX, SCORE_MIN

from conftest import DAI, USDC, WETH, FakeAdapter


class BrokenAdapter(FakeAdapter):
    async def quote(self, token_in, token_out, amount_in):
        raise RuntimeError("adapter bug")


class SlowAdapter(FakeAdapter):
    async def quote(self, token_in, token_out, amount_in):
        await asyncio.sleep(5)
        return await super().quote(token_in, token_out, amount_in)


class GatedAdapter(FakeAdapter):
    """Holds every quote until the gate opens."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()

    async def quote(self, token_in, token_out, amount_in):
        await self.gate.wait()
        return await super().quote(token_in, token_out, amount_in)


@pytest.mark.asyncio
async def test_best_quote_selects_highest_output_and_credits_only_winner(state):
    a = FakeAdapter("A", {(USDC, WETH): 100})
    b = FakeAdapter("B", {(USDC, WETH): 105})
    aggregator = DEXQuoteAggregator([a, b], state, seed=1)

    quote = await aggregator.best_quote(USDC, WETH, 1000)

    assert quote.dex == "B"
    assert quote.amount_out == 105
    assert state.dex_stats("B").successes == 1
    assert state.dex_stats("A").successes == 0
    assert state.dex_stats("A").attempts == 1
    assert state.pair_dexes(USDC, WETH) == {"A", "B"}


@pytest.mark.asyncio
async def test_cached_quote_does_not_reach_adapters(state, clock):
    a = FakeAdapter("A", {(USDC, WETH): 100})
    aggregator = DEXQuoteAggregator([a], state)

    first = await aggregator.best_quote(USDC, WETH, 1000)
    second = await aggregator.best_quote(USDC, WETH, 1000)

    assert first is second
    assert len(a.calls) == 1

    clock.advance(16)
    await aggregator.best_quote(USDC, WETH, 1000)
    assert len(a.calls) == 2


@pytest.mark.asyncio
async def test_missing_quote_is_cached_as_none(state):
    a = FakeAdapter("A")
    aggregator = DEXQuoteAggregator([a], state)

    assert await aggregator.best_quote(USDC, DAI, 1000) is None
    assert await aggregator.best_quote(USDC, DAI, 1000) is None
    assert len(a.calls) == 1
    assert not aggregator.has_liquidity(USDC, DAI)


@pytest.mark.asyncio
async def test_adapter_failures_are_isolated(state):
    broken = BrokenAdapter("broken")
    slow = SlowAdapter("slow", {(USDC, WETH): 500})
    good = FakeAdapter("good", {(USDC, WETH): 100})
    aggregator = DEXQuoteAggregator([broken, slow, good], state, adapter_timeout=0.05)

    quote = await aggregator.best_quote(USDC, WETH, 1000)

    assert quote.dex == "good"
    assert state.dex_stats("broken").attempts == 1
    assert state.dex_stats("slow").successes == 0


@pytest.mark.asyncio
async def test_pair_score_moves_with_success_and_failure(state, clock):
    adapter = FakeAdapter("A", {(USDC, WETH): 100})
    aggregator = DEXQuoteAggregator([adapter], state)

    await aggregator.best_quote(USDC, WETH, 1000)
    assert aggregator.pair_liquidity_score(USDC, WETH) == pytest.approx(0.5 * 0.95 + 0.05)
    assert aggregator.has_liquidity(WETH, USDC)

    adapter.rules.clear()
    await aggregator.best_quote(USDC, WETH, 2000)
    assert aggregator.pair_liquidity_score(USDC, WETH) == pytest.approx((0.5 * 0.95 + 0.05) * 0.95)
    assert not aggregator.has_liquidity(USDC, WETH)


@pytest.mark.asyncio
async def test_pair_score_stays_clamped(state):
    adapter = FakeAdapter("A", {(USDC, WETH): 100})
    aggregator = DEXQuoteAggregator([adapter], state)

    for amount in range(1, 200):
        await aggregator.best_quote(USDC, WETH, amount)
    assert aggregator.pair_liquidity_score(USDC, WETH) <= SCORE_MAX

    adapter.rules.clear()
    for amount in range(1000, 1200):
        await aggregator.best_quote(USDC, WETH, amount)
    assert aggregator.pair_liquidity_score(USDC, WETH) == pytest.approx(SCORE_MIN)


def test_unknown_pair_has_zero_score(state):
    aggregator = DEXQuoteAggregator([], state)
    assert aggregator.pair_liquidity_score(USDC, WETH) == 0.0
    assert not aggregator.has_liquidity(USDC, WETH)


def test_adapter_order_is_reproducible_for_a_seed(state):
    adapters = [FakeAdapter(name) for name in ("a", "b", "c", "d")]
    first = DEXQuoteAggregator(adapters, state, seed=42).order_adapters(USDC, WETH)
    second = DEXQuoteAggregator(adapters, state, seed=42).order_adapters(USDC, WETH)
    assert [a.name for a in first] == [a.name for a in second]


def test_estimate_gas_cost_counts_hops_switches_and_venue_kinds(state):
    adapters = [FakeAdapter("uni", kind="v3"), FakeAdapter("quick"), FakeAdapter("curve", kind="curve")]
    aggregator = DEXQuoteAggregator(adapters, state)

    assert aggregator.estimate_gas_cost([USDC, WETH, USDC]) == 120_000 + 2 * 60_000
    assert aggregator.estimate_gas_cost(
        [USDC, WETH, DAI, USDC], ["uni", "quick", "curve"],
    ) == 120_000 + 3 * 60_000 + 2 * 20_000 + 25_000 + 30_000


@pytest.mark.asyncio
async def test_warm_up_probes_both_directions(state):
    adapter = FakeAdapter("A", {(USDC, WETH): 100, (WETH, USDC): 100})
    aggregator = DEXQuoteAggregator([adapter], state)

    liquid = await aggregator.warm_up([(USDC, WETH), (USDC, DAI)], lambda token: 10)

    assert liquid == 1
    assert {(c[0], c[1]) for c in adapter.calls} == {
        (USDC, WETH), (WETH, USDC), (USDC, DAI), (DAI, USDC),
    }


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_query(state):
    adapter = GatedAdapter("A", {(USDC, WETH): 100})
    aggregator = DEXQuoteAggregator([adapter], state)

    requests = [asyncio.ensure_future(aggregator.best_quote(USDC, WETH, 1000)) for _ in range(5)]
    await asyncio.sleep(0)
    adapter.gate.set()
    quotes = await asyncio.gather(*requests)

    assert len(adapter.calls) == 1
    assert all(q is quotes[0] for q in quotes)
    assert state.dex_stats("A").attempts == 1
    assert aggregator.pair_liquidity_score(USDC, WETH) == pytest.approx(0.5 * 0.95 + 0.05)


@pytest.mark.asyncio
async def test_adapter_that_never_wins_keeps_floor_rate(state):
    loser = FakeAdapter("A")
    winner = FakeAdapter("B", {(USDC, WETH): 100})
    aggregator = DEXQuoteAggregator([loser, winner], state)

    for amount in range(1, 6):
        await aggregator.best_quote(USDC, WETH, amount)

    assert state.dex_stats("A").attempts == 5
    assert state.dex_stats("A").successes == 0
    assert state.dex_success_rate("A") == SCORE_MIN
    assert aggregator.adapter_priority(loser, USDC, WETH) > 0


@pytest.mark.asyncio
async def test_next_epoch_sweeps_expired_quotes(state, clock):
    aggregator = DEXQuoteAggregator([FakeAdapter("A", {(USDC, WETH): 100})], state)

    await aggregator.best_quote(USDC, WETH, 1)
    await aggregator.best_quote(USDC, WETH, 2)
    clock.advance(16)
    await aggregator.best_quote(USDC, WETH, 3)

    aggregator.next_epoch()

    assert list(state._quote_cache) == [(USDC, WETH, 3)]

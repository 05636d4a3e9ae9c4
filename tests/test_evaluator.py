import pytest

from flashcycle.aggregator import DEXQuoteAggregator
from flashcycle.evaluator import CycleBroken, ProfitEvaluator, profit_percentage
from flashcycle.state import pair_key

from conftest import USDC, WBTC, WETH, FakeAdapter

USDC_UNIT = 10 ** 6
WETH_UNIT = 10 ** 18


def usdc_to_weth(amount):
    # 1000 USDC -> 0.5 WETH
    return amount * WETH_UNIT // (2000 * USDC_UNIT)


def weth_to_usdc(usdc_per_half_weth):
    def rule(amount):
        return amount * usdc_per_half_weth * USDC_UNIT // (WETH_UNIT // 2)
    return rule


def make_evaluator(catalog, state, rules, **kwargs):
    aggregator = DEXQuoteAggregator([FakeAdapter("dex", rules)], state)
    kwargs.setdefault("test_amounts", [1000])
    return ProfitEvaluator(aggregator, catalog, **kwargs)


@pytest.mark.asyncio
async def test_profitable_round_trip(catalog, state):
    evaluator = make_evaluator(catalog, state, {
        (USDC, WETH): usdc_to_weth,
        (WETH, USDC): weth_to_usdc(1010),
    })

    results = await evaluator.evaluate([(USDC, WETH, USDC)])

    assert len(results) == 1
    result = results[0]
    assert result.initial_amount == 1000 * USDC_UNIT
    assert result.quotes[0].amount_out == WETH_UNIT // 2
    assert result.final_amount == 1010 * USDC_UNIT
    assert result.profit == 10 * USDC_UNIT
    assert result.profit_percentage == pytest.approx(1.0)
    assert len(result.quotes) == 2
    assert evaluator.last_outcomes == {pair_key(USDC, WETH): True}


@pytest.mark.asyncio
async def test_broken_cycle_is_excluded_without_raising(catalog, state):
    evaluator = make_evaluator(catalog, state, {
        (USDC, WETH): usdc_to_weth,
        (WBTC, USDC): lambda amount: amount,
    })

    results = await evaluator.evaluate([(USDC, WETH, WBTC, USDC)])

    assert results == []
    assert evaluator.last_stats.broken == 1
    assert evaluator.last_stats.profitable == 0


@pytest.mark.asyncio
async def test_evaluate_cycle_raises_cycle_broken_when_every_amount_breaks(catalog, state):
    evaluator = make_evaluator(catalog, state, {(USDC, WETH): usdc_to_weth})

    with pytest.raises(CycleBroken):
        await evaluator.evaluate_cycle((USDC, WETH, WBTC, USDC))


@pytest.mark.asyncio
async def test_profit_below_minimum_is_not_returned(catalog, state):
    evaluator = make_evaluator(catalog, state, {
        (USDC, WETH): usdc_to_weth,
        (WETH, USDC): lambda amount: weth_to_usdc(1000)(amount) + USDC_UNIT // 10,
    })

    results = await evaluator.evaluate([(USDC, WETH, USDC)])

    assert results == []
    assert evaluator.last_stats.unprofitable == 1
    assert evaluator.last_outcomes == {pair_key(USDC, WETH): False}


@pytest.mark.asyncio
async def test_first_positive_test_amount_wins(catalog, state):
    def back_to_usdc(amount):
        # losing below 1000 USDC notional, 1% gain from there
        gain = 1010 if amount >= WETH_UNIT // 2 else 990
        return weth_to_usdc(gain)(amount)

    evaluator = make_evaluator(
        catalog, state,
        {(USDC, WETH): usdc_to_weth, (WETH, USDC): back_to_usdc},
        test_amounts=[10, 100, 1000, 5000],
    )

    result = await evaluator.evaluate_cycle((USDC, WETH, USDC))

    assert result.initial_amount == 1000 * USDC_UNIT
    assert result.profitable


@pytest.mark.asyncio
async def test_stops_after_enough_profitable_cycles(catalog, state):
    evaluator = make_evaluator(
        catalog, state,
        {(USDC, WETH): usdc_to_weth, (WETH, USDC): weth_to_usdc(1010)},
        max_profitable=2,
        adaptive_batch_size=False,
    )

    results = await evaluator.evaluate([(USDC, WETH, USDC)] * 30)

    assert len(results) == 2
    assert evaluator.last_stats.evaluated == 20
    assert evaluator.last_stats.stopped_early


def test_batch_size(catalog, state):
    evaluator = make_evaluator(catalog, state, {})
    assert evaluator.batch_size(100) == 10
    assert evaluator.batch_size(400) == 20
    assert evaluator.batch_size(5000) == 50

    evaluator.adaptive_batch_size = False
    assert evaluator.batch_size(5000) == 20


def test_amounts_scale_with_token_decimals(catalog, state):
    evaluator = make_evaluator(catalog, state, {}, test_amounts=[10, 100])
    assert evaluator.amounts_for(USDC) == [10 * USDC_UNIT, 100 * USDC_UNIT]
    assert evaluator.amounts_for(WBTC) == [10 * 10 ** 8, 100 * 10 ** 8]


def test_profit_percentage_resolves_to_basis_points():
    assert profit_percentage(10 * USDC_UNIT, 1000 * USDC_UNIT) == 1.0
    assert profit_percentage(1, 3) == pytest.approx(33.33)
    assert profit_percentage(5, 0) == 0.0


@pytest.mark.asyncio
async def test_cycles_sharing_a_first_hop_query_it_once(catalog, state):
    adapter = FakeAdapter("dex", {
        (USDC, WETH): usdc_to_weth,
        (WETH, USDC): weth_to_usdc(1010),
        (WETH, WBTC): lambda amount: amount // 10 ** 10,
    })
    evaluator = ProfitEvaluator(DEXQuoteAggregator([adapter], state), catalog, test_amounts=[1000])

    await evaluator.evaluate([(USDC, WETH, USDC), (USDC, WETH, WBTC, USDC)])

    first_hops = [call for call in adapter.calls if call[:2] == (USDC, WETH)]
    assert len(first_hops) == 1

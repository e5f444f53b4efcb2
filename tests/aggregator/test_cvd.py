from cvd_monitor.aggregator.cvd import fold_trade_deltas, walk_buckets
from cvd_monitor.aggregator.oi import OIPoint
from cvd_monitor.client.models import AggTrade
from cvd_monitor.storage.models import Snapshot

INTERVAL = 300_000


def _trade(agg_id: int, ts: int, qty: float, buyer_maker: bool) -> AggTrade:
    return AggTrade(agg_id=agg_id, price=100.0, quantity=qty, timestamp=ts, is_buyer_maker=buyer_maker)


def test_fold_trade_deltas_signs_by_aggressor():
    trades = [
        _trade(1, 10, 2.0, False),  # 主动买
        _trade(2, 20, 0.5, True),  # 主动卖
        _trade(3, INTERVAL + 1, 1.0, True),
    ]

    deltas = fold_trade_deltas(trades, INTERVAL, 0, 2 * INTERVAL)

    assert deltas == {0: 1.5, INTERVAL: -1.0}


def test_fold_trade_deltas_drops_out_of_range():
    trades = [
        _trade(1, -1, 5.0, False),
        _trade(2, 0, 1.0, False),
        _trade(3, 2 * INTERVAL, 7.0, False),
        _trade(4, 10, float("nan"), False),
    ]

    assert fold_trade_deltas(trades, INTERVAL, 0, 2 * INTERVAL) == {0: 1.0}


def test_walk_continues_from_previous_snapshot():
    previous = Snapshot("BTCUSDT", 0, 100.0, 50.0, open_interest=10.0, open_interest_value=1000.0)
    buckets = [INTERVAL, 2 * INTERVAL]

    walk = walk_buckets(
        "BTCUSDT",
        buckets,
        prices={INTERVAL: 101.0, 2 * INTERVAL: 102.0},
        open_interest={INTERVAL: OIPoint(11.0, 1111.0)},
        deltas={INTERVAL: 5.0, 2 * INTERVAL: -2.0},
        previous=previous,
    )

    assert [s.cvd for s in walk.snapshots] == [55.0, 53.0]
    # 缺失的持仓量沿用上一桶
    assert walk.snapshots[1].open_interest == 11.0
    assert walk.snapshots[1].open_interest_value == 1111.0
    assert walk.final_cvd == 53.0


def test_walk_carries_price_forward():
    previous = Snapshot("BTCUSDT", 0, 100.0, 0.0)

    walk = walk_buckets(
        "BTCUSDT", [INTERVAL, 2 * INTERVAL], prices={}, open_interest={}, deltas={}, previous=previous
    )

    assert [s.price for s in walk.snapshots] == [100.0, 100.0]
    assert [s.cvd for s in walk.snapshots] == [0.0, 0.0]


def test_walk_skips_bucket_without_any_price_but_keeps_delta():
    walk = walk_buckets(
        "BTCUSDT",
        [0, INTERVAL, 2 * INTERVAL],
        prices={INTERVAL: 100.0},
        open_interest={},
        deltas={0: 3.0, INTERVAL: 1.0, 2 * INTERVAL: 2.0},
    )

    assert walk.skipped == [0]
    assert [s.timestamp for s in walk.snapshots] == [INTERVAL, 2 * INTERVAL]
    # 被跳过的桶的增量落在下一个快照上
    assert [s.cvd for s in walk.snapshots] == [4.0, 6.0]


def test_walk_ignores_non_finite_price():
    previous = Snapshot("BTCUSDT", 0, 100.0, 0.0)

    walk = walk_buckets(
        "BTCUSDT", [INTERVAL], prices={INTERVAL: float("nan")}, open_interest={}, deltas={}, previous=previous
    )

    assert walk.snapshots[0].price == 100.0


def test_walk_initial_cvd_overrides_previous():
    previous = Snapshot("BTCUSDT", 0, 100.0, 50.0)

    walk = walk_buckets(
        "BTCUSDT", [INTERVAL], prices={INTERVAL: 1.0}, open_interest={}, deltas={INTERVAL: 1.0},
        previous=previous, initial_cvd=0.0,
    )

    assert walk.snapshots[0].cvd == 1.0

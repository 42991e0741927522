import datetime as dt
from decimal import Decimal

import pytest

from analytics import (
    add_months,
    amount_stats,
    days_in_window,
    expense_source_stats,
    filter_by_window,
    group_by_category,
    group_by_source,
    months_before,
    normalize_window,
    previous_window_bounds,
    quarter_bounds,
    spending_time_patterns,
    sum_by_type,
    time_of_day,
    trend_periods,
    window_bounds,
)
from categories import CategoryRegistry
from conftest import NOW, make_tx


@pytest.fixture
def registry():
    return CategoryRegistry()


def test_normalize_window_falls_back_to_month():
    assert normalize_window("WEEK") == "week"
    assert normalize_window(" year ") == "year"
    assert normalize_window("fortnight") == "month"
    assert normalize_window("") == "month"


@pytest.mark.parametrize("bad", [None, 7, ["day"]])
def test_normalize_window_rejects_non_strings(bad):
    with pytest.raises(TypeError):
        normalize_window(bad)
    with pytest.raises(TypeError):
        days_in_window(bad)


@pytest.mark.parametrize(
    "kind,start",
    [
        ("day", dt.datetime(2024, 12, 15)),
        ("week", dt.datetime(2024, 12, 8, 12, 0)),
        ("month", dt.datetime(2024, 12, 1)),
        ("year", dt.datetime(2024, 1, 1)),
    ],
)
def test_window_bounds_end_at_now(kind, start):
    assert window_bounds(kind, NOW) == (start, NOW)


@pytest.mark.parametrize(
    "kind,expected",
    [
        ("day", (dt.datetime(2024, 12, 14), dt.datetime(2024, 12, 15))),
        ("week", (dt.datetime(2024, 12, 1, 12, 0), dt.datetime(2024, 12, 8, 12, 0))),
        ("month", (dt.datetime(2024, 11, 1), dt.datetime(2024, 12, 1))),
        ("year", (dt.datetime(2023, 1, 1), dt.datetime(2024, 1, 1))),
    ],
)
def test_previous_window_bounds(kind, expected):
    assert previous_window_bounds(kind, NOW) == expected


def test_previous_month_across_year_boundary():
    start, end = previous_window_bounds("month", dt.datetime(2025, 1, 10, 8, 0))
    assert (start, end) == (dt.datetime(2024, 12, 1), dt.datetime(2025, 1, 1))


def test_add_months_wraps_years():
    assert add_months(dt.datetime(2024, 1, 1), -1) == dt.datetime(2023, 12, 1)
    assert add_months(dt.datetime(2024, 11, 1), 2) == dt.datetime(2025, 1, 1)
    assert add_months(dt.datetime(2024, 6, 1), -18) == dt.datetime(2022, 12, 1)


def test_filter_by_window_is_inclusive_of_both_ends():
    at_start = make_tx(1, date=dt.datetime(2024, 12, 1))
    at_now = make_tx(2, date=NOW)
    future = make_tx(3, date=NOW + dt.timedelta(seconds=1))
    last_month = make_tx(4, date=dt.datetime(2024, 11, 30, 23, 59))

    result = filter_by_window([future, at_now, last_month, at_start], "month", NOW)
    # original order is kept
    assert result == [at_now, at_start]


def test_days_in_window_is_a_fixed_approximation():
    assert days_in_window("day") == 1
    assert days_in_window("week") == 7
    assert days_in_window("month") == 30
    assert days_in_window("year") == 365
    assert days_in_window("bogus") == 30


def test_sum_by_type_stays_decimal():
    txs = [make_tx("0.1"), make_tx("0.2"), make_tx(5, "income")]
    assert sum_by_type(txs, "expense") == Decimal("0.3")
    assert sum_by_type(txs, "income") == Decimal("5")


def test_group_by_category_sorted_with_percentages(registry):
    txs = [
        make_tx(100, category_id="transport"),
        make_tx(300, category_id="food"),
        make_tx(100, category_id="food"),
        make_tx(5000, "income", "salary"),
    ]
    groups = group_by_category(txs, registry)

    assert [g["id"] for g in groups] == ["food", "transport"]
    assert groups[0] == {"id": "food", "name": "餐饮", "amount": 400.0, "count": 2, "percentage": 80}
    assert groups[1]["percentage"] == 20


def test_group_by_category_amounts_add_up_to_total_expense(registry):
    txs = [make_tx(a, category_id=c) for a, c in
           [(12.34, "food"), (5.66, "shopping"), (100, "study"), (0.01, "entertainment")]]
    groups = group_by_category(txs, registry)
    assert round(sum(g["amount"] for g in groups), 2) == float(sum_by_type(txs, "expense"))


def test_group_by_category_unknown_ids_land_in_other(registry):
    txs = [make_tx(10, category_id="pets"), make_tx(5, category_id=None), make_tx(5, category_id="other")]
    groups = group_by_category(txs, registry)
    assert len(groups) == 1
    assert groups[0]["id"] == "other"
    assert groups[0]["count"] == 3
    assert groups[0]["percentage"] == 100


def test_group_by_category_ties_keep_first_seen_order(registry):
    txs = [make_tx(50, category_id="study"), make_tx(50, category_id="food"), make_tx(50, category_id="transport")]
    assert [g["id"] for g in group_by_category(txs, registry)] == ["study", "food", "transport"]


def test_group_by_category_without_expenses(registry):
    assert group_by_category([make_tx(10, "income", "salary")], registry) == []


def test_group_by_source_labels_and_totals():
    txs = [
        make_tx(20, source="alipay"),
        make_tx(100, "income", "salary", source="manual"),
        make_tx(30, source="alipay"),
        make_tx(1, source="carrier-pigeon"),
    ]
    groups = group_by_source(txs)
    assert [g["source"] for g in groups] == ["alipay", "manual", "carrier-pigeon"]
    assert groups[0] == {"source": "alipay", "name": "Alipay", "income": 0.0, "expense": 50.0, "count": 2}
    assert groups[1]["name"] == "Manual entry"
    assert groups[1]["income"] == 100.0
    # unknown sources are labelled with their own tag
    assert groups[2]["name"] == "carrier-pigeon"


def test_trend_periods_monthly_series():
    periods = trend_periods("month", NOW)
    assert [label for label, _, _ in periods] == [
        "2024-07", "2024-08", "2024-09", "2024-10", "2024-11", "2024-12",
    ]
    label, start, end = periods[-1]
    assert (start, end) == (dt.datetime(2024, 12, 1), dt.datetime(2025, 1, 1))


def test_trend_periods_cross_year_boundary():
    labels = [label for label, _, _ in trend_periods("week", dt.datetime(2025, 2, 3))]
    assert labels == ["2024-09", "2024-10", "2024-11", "2024-12", "2025-01", "2025-02"]


def test_trend_periods_yearly_series():
    periods = trend_periods("year", NOW)
    assert [label for label, _, _ in periods] == ["2022", "2023", "2024"]
    assert periods[0][1] == dt.datetime(2022, 1, 1)
    assert periods[0][2] == dt.datetime(2023, 1, 1)


def test_amount_stats_population_deviation():
    assert amount_stats([]) is None
    mean, sd = amount_stats([Decimal(v) for v in (2, 4, 4, 4, 5, 5, 7, 9)])
    assert mean == 5.0
    assert sd == 2.0


@pytest.mark.parametrize(
    "now,bounds",
    [
        (dt.datetime(2024, 12, 15, 12), (dt.datetime(2024, 10, 1), dt.datetime(2025, 1, 1))),
        (dt.datetime(2025, 1, 1, 0, 0), (dt.datetime(2025, 1, 1), dt.datetime(2025, 4, 1))),
        (dt.datetime(2025, 6, 30, 23, 59), (dt.datetime(2025, 4, 1), dt.datetime(2025, 7, 1))),
    ],
)
def test_quarter_bounds(now, bounds):
    assert quarter_bounds(now) == bounds


def test_quarter_window_and_previous_quarter_cross_the_year():
    now = dt.datetime(2025, 2, 10, 9, 0)
    assert normalize_window("Quarter") == "quarter"
    assert window_bounds("quarter", now) == (dt.datetime(2025, 1, 1), now)
    assert previous_window_bounds("quarter", now) == (dt.datetime(2024, 10, 1), dt.datetime(2025, 1, 1))
    assert days_in_window("quarter") == 90

    txs = [
        make_tx(10, date=dt.datetime(2024, 12, 31, 23, 59)),
        make_tx(20, date=dt.datetime(2025, 1, 1)),
        make_tx(30, date=dt.datetime(2025, 2, 10, 9, 1)),
    ]
    assert [float(t.amount) for t in filter_by_window(txs, "quarter", now)] == [20.0]


def test_trend_periods_quarterly_series_crosses_year():
    periods = trend_periods("quarter", dt.datetime(2025, 2, 10))
    assert [label for label, _, _ in periods] == ["2024-Q2", "2024-Q3", "2024-Q4", "2025-Q1"]
    assert periods[2][1:] == (dt.datetime(2024, 10, 1), dt.datetime(2025, 1, 1))


def test_months_before_clamps_the_day():
    assert months_before(dt.datetime(2025, 3, 31, 8, 0), 1) == dt.datetime(2025, 2, 28, 8, 0)
    assert months_before(dt.datetime(2025, 1, 15), 6) == dt.datetime(2024, 7, 15)
    assert months_before(dt.datetime(2024, 8, 31), 6) == dt.datetime(2024, 2, 29)


def test_expense_source_stats_sorted_by_total():
    txs = [
        make_tx(10, source="wechat"),
        make_tx(30, source="wechat"),
        make_tx(100, source="alipay"),
        make_tx(500, "income", "salary", source="manual"),
        make_tx(5, source=None),
    ]
    stats = expense_source_stats(txs)
    assert [(s["source"], s["total"], s["count"], s["average"]) for s in stats] == [
        ("alipay", 100.0, 1, 100.0),
        ("wechat", 40.0, 2, 20.0),
        ("manual", 5.0, 1, 5.0),
    ]
    assert stats[1]["name"] == "WeChat Pay"
    assert expense_source_stats([]) == []


@pytest.mark.parametrize(
    "hour,part",
    [(0, "night"), (5, "night"), (6, "morning"), (11, "morning"), (12, "afternoon"),
     (17, "afternoon"), (18, "evening"), (23, "evening")],
)
def test_time_of_day(hour, part):
    assert time_of_day(dt.datetime(2024, 12, 2, hour, 30)) == part


def test_spending_time_patterns():
    txs = [
        make_tx(20, date=dt.datetime(2024, 12, 14, 19, 0)),  # Saturday evening
        make_tx(10, date=dt.datetime(2024, 12, 2, 8, 0)),    # Monday morning
        make_tx(15, date=dt.datetime(2024, 12, 3, 9, 30)),   # Tuesday morning
        make_tx(40, date=dt.datetime(2024, 12, 4, 2, 0)),    # Wednesday night
        make_tx(1000, "income", "salary", date=dt.datetime(2024, 12, 15, 10, 0)),
    ]
    assert spending_time_patterns(txs) == [
        {"is_weekend": False, "time_of_day": "night", "total": 40.0, "count": 1},
        {"is_weekend": False, "time_of_day": "morning", "total": 25.0, "count": 2},
        {"is_weekend": True, "time_of_day": "evening", "total": 20.0, "count": 1},
    ]

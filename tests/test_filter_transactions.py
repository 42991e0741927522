# tests/test_filter_transactions.py
import datetime as dt

from conftest import make_tx
from utils import filter_transactions


def base_transactions():
    return [
        make_tx(1000, "income", "salary", dt.datetime(2025, 1, 1), description="monthly salary"),
        make_tx(500, "income", "investment", dt.datetime(2025, 1, 15, 18), description="yearly bonus"),
        make_tx(700, "expense", "other", dt.datetime(2025, 1, 5), description="apartment rent"),
        make_tx(120, "expense", "food", dt.datetime(2025, 1, 20), merchant="FreshMart",
                source="alipay", tags=["groceries"]),
        make_tx(650, "expense", "other", dt.datetime(2024, 12, 20), description="previous month rent"),
    ]


def test_filter_no_filters_returns_all():
    txs = base_transactions()
    assert len(filter_transactions(txs)) == len(txs)


def test_filter_by_type_income_only():
    result = filter_transactions(base_transactions(), tx_type="income")
    assert {t.category_id for t in result} == {"salary", "investment"}


def test_filter_by_date_range_inclusive_of_whole_days():
    result = filter_transactions(
        base_transactions(),
        date_from=dt.date(2025, 1, 5),
        date_to=dt.date(2025, 1, 15),
    )
    # the 18:00 entry on the 15th still counts
    assert sorted(float(t.amount) for t in result) == [500.0, 700.0]


def test_filter_by_query_matches_description_merchant_and_tags():
    txs = base_transactions()
    assert len(filter_transactions(txs, query="RENT")) == 2
    assert len(filter_transactions(txs, query="freshmart")) == 1
    assert len(filter_transactions(txs, query="grocer")) == 1


def test_filter_by_category_and_source():
    txs = base_transactions()
    assert len(filter_transactions(txs, category_id="other")) == 2
    assert [float(t.amount) for t in filter_transactions(txs, source="alipay")] == [120.0]
    assert len(filter_transactions(txs, source="manual")) == 4


def test_filter_combined_type_date_and_query():
    result = filter_transactions(
        base_transactions(),
        date_from=dt.date(2025, 1, 1),
        date_to=dt.date(2025, 1, 31),
        query="rent",
        tx_type="expense",
    )
    # only the January rent, not the December one
    assert len(result) == 1
    assert result[0].description == "apartment rent"


def test_filter_accepts_iso_strings_for_dates():
    result = filter_transactions(base_transactions(), date_from="2025-01-15", date_to="2025-01-31")
    assert sorted(float(t.amount) for t in result) == [120.0, 500.0]

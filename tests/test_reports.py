from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

from models import TransactionType
from periods import resolve_period
from reports import UNCATEGORIZED, summarize


def _row(txn_type, amount, category=None, **extra):
    return SimpleNamespace(
        type=txn_type,
        amount=Decimal(amount),
        category=SimpleNamespace(name=category) if category else None,
        **extra,
    )


PERIOD = resolve_period("month", date(2024, 1, 15))


def test_empty_input_yields_zero_summary():
    summary = summarize([], PERIOD)

    assert summary.total_income == Decimal("0")
    assert summary.total_expenses == Decimal("0")
    assert summary.balance == Decimal("0")
    assert summary.income_count == 0
    assert summary.expense_count == 0
    assert summary.breakdown_for(TransactionType.income) == {}
    assert summary.breakdown_for(TransactionType.expense) == {}
    assert summary.transactions == []


def test_monthly_scenario_totals_and_breakdown():
    rows = [
        _row(TransactionType.income, "500.00", "Donations"),
        _row(TransactionType.income, "250.00", "Donations"),
        _row(TransactionType.expense, "120.50", "Utilities"),
        _row(TransactionType.expense, "79.50"),
    ]

    summary = summarize(rows, PERIOD)

    assert summary.total_income == Decimal("750.00")
    assert summary.total_expenses == Decimal("200.00")
    assert summary.balance == Decimal("550.00")
    assert summary.income_count == 2
    assert summary.expense_count == 2

    income = summary.breakdown_for(TransactionType.income)
    assert list(income) == ["Donations"]
    assert income["Donations"].total == Decimal("750.00")
    assert income["Donations"].count == 2

    expense = summary.breakdown_for(TransactionType.expense)
    assert expense["Utilities"].total == Decimal("120.50")
    assert expense[UNCATEGORIZED].total == Decimal("79.50")
    assert expense[UNCATEGORIZED].count == 1


def test_bucket_totals_sum_exactly_to_type_totals():
    rows = [
        _row(TransactionType.expense, "0.10", "A"),
        _row(TransactionType.expense, "0.20", "B"),
        _row(TransactionType.expense, "0.30"),
        _row(TransactionType.income, "0.10", "A"),
        _row(TransactionType.income, "0.20", "A"),
    ]

    summary = summarize(rows, PERIOD)

    assert summary.total_income == Decimal("0.30")
    assert summary.total_expenses == Decimal("0.60")
    for txn_type, total, count in (
        (TransactionType.income, summary.total_income, summary.income_count),
        (TransactionType.expense, summary.total_expenses, summary.expense_count),
    ):
        buckets = summary.breakdown_for(txn_type).values()
        assert sum((bucket.total for bucket in buckets), Decimal("0")) == total
        assert sum(bucket.count for bucket in buckets) == count
    assert len(summary.transactions) == summary.income_count + summary.expense_count


def test_same_category_name_is_split_by_type():
    rows = [
        _row(TransactionType.income, "10.00", "General"),
        _row(TransactionType.expense, "4.00", "General"),
    ]

    summary = summarize(rows, PERIOD)

    assert summary.breakdown_for(TransactionType.income)["General"].total == Decimal("10.00")
    assert summary.breakdown_for(TransactionType.expense)["General"].total == Decimal("4.00")


def test_float_amounts_are_summed_without_binary_drift():
    rows = [
        SimpleNamespace(type=TransactionType.income, amount=0.1, category=None),
        SimpleNamespace(type=TransactionType.income, amount=0.2, category=None),
    ]

    assert summarize(rows, PERIOD).total_income == Decimal("0.3")


def test_summarize_does_not_filter_rows():
    outside = _row(TransactionType.income, "5.00", transaction_date=datetime(2030, 1, 1))

    summary = summarize([outside], PERIOD)

    assert summary.income_count == 1


def test_to_dict_has_wire_shape_with_both_type_keys():
    rows = [_row(TransactionType.expense, "12.34", "Food", id="t1")]

    payload = summarize(rows, PERIOD).to_dict(lambda row: {"id": row.id})

    assert payload["period"] == {
        "type": "month",
        "startDate": "2024-01-01T00:00:00",
        "endDate": "2024-01-31T23:59:59.999999",
    }
    assert payload["summary"] == {
        "totalIncome": 0.0,
        "totalExpenses": 12.34,
        "balance": -12.34,
        "incomeCount": 0,
        "expenseCount": 1,
    }
    assert payload["categoryBreakdown"]["INCOME"] == {}
    assert payload["categoryBreakdown"]["EXPENSE"]["Food"] == {
        "total": 12.34,
        "count": 1,
        "transactions": [{"id": "t1"}],
    }
    assert payload["transactions"] == [{"id": "t1"}]

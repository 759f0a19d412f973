from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Protocol

from models import TransactionType
from periods import Period

UNCATEGORIZED = "Uncategorized"
ZERO = Decimal("0.00")


class _Named(Protocol):
    name: str


class LedgerRow(Protocol):
    type: TransactionType
    amount: Decimal
    category: Optional[_Named]


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def category_label(row: LedgerRow) -> str:
    category = row.category
    return category.name if category is not None else UNCATEGORIZED


@dataclass
class CategoryBucket:
    total: Decimal = ZERO
    count: int = 0
    transactions: list[LedgerRow] = field(default_factory=list)

    def add(self, row: LedgerRow) -> None:
        self.total += _as_decimal(row.amount)
        self.count += 1
        self.transactions.append(row)


Breakdown = dict[TransactionType, dict[str, CategoryBucket]]


@dataclass
class Summary:
    period: Period
    total_income: Decimal
    total_expenses: Decimal
    income_count: int
    expense_count: int
    category_breakdown: Breakdown
    transactions: list[LedgerRow]

    @property
    def balance(self) -> Decimal:
        return self.total_income - self.total_expenses

    def breakdown_for(self, txn_type: TransactionType) -> dict[str, CategoryBucket]:
        return self.category_breakdown.get(txn_type, {})

    def to_dict(
        self, serialize: Callable[[LedgerRow], Any] = lambda row: row
    ) -> dict[str, Any]:
        """Render the summary in its JSON wire shape.

        Amounts become JSON numbers only here; every total above stays a
        ``Decimal`` so the per-type bucket sums match the type totals exactly.
        """
        serialized = {id(row): serialize(row) for row in self.transactions}

        def render(row: LedgerRow) -> Any:
            return serialized[id(row)]

        return {
            "period": {
                "type": self.period.kind.value,
                "startDate": self.period.start.isoformat(),
                "endDate": self.period.end.isoformat(),
            },
            "summary": {
                "totalIncome": float(self.total_income),
                "totalExpenses": float(self.total_expenses),
                "balance": float(self.balance),
                "incomeCount": self.income_count,
                "expenseCount": self.expense_count,
            },
            "categoryBreakdown": {
                txn_type.value: {
                    name: {
                        "total": float(bucket.total),
                        "count": bucket.count,
                        "transactions": [render(row) for row in bucket.transactions],
                    }
                    for name, bucket in self.breakdown_for(txn_type).items()
                }
                for txn_type in TransactionType
            },
            "transactions": [render(row) for row in self.transactions],
        }


def summarize(rows: Iterable[LedgerRow], period: Period) -> Summary:
    """Fold an already tenant- and period-filtered row set into a summary.

    No filtering happens here: every row passed in is counted.
    """
    totals = {txn_type: ZERO for txn_type in TransactionType}
    counts = {txn_type: 0 for txn_type in TransactionType}
    breakdown: Breakdown = {txn_type: {} for txn_type in TransactionType}
    seen: list[LedgerRow] = []

    for row in rows:
        txn_type = TransactionType(row.type)
        totals[txn_type] += _as_decimal(row.amount)
        counts[txn_type] += 1
        buckets = breakdown[txn_type]
        label = category_label(row)
        if label not in buckets:
            buckets[label] = CategoryBucket()
        buckets[label].add(row)
        seen.append(row)

    return Summary(
        period=period,
        total_income=totals[TransactionType.income],
        total_expenses=totals[TransactionType.expense],
        income_count=counts[TransactionType.income],
        expense_count=counts[TransactionType.expense],
        category_breakdown=breakdown,
        transactions=seen,
    )

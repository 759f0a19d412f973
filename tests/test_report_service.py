import logging
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy.orm import sessionmaker

import services
from database import Base, create_store_engine
from models import TransactionType
from periods import PeriodKind
from reports import UNCATEGORIZED
from services import CategoryService, OrganizationService, ReportService, TransactionService


def make_session():
    engine = create_store_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()


def register(session, email: str, org_name: str):
    return OrganizationService(session).register(
        {
            "email": email,
            "password": "secret123",
            "firstName": "Test",
            "lastName": "Owner",
            "organizationName": org_name,
        }
    )


def record(service, user, txn_type, amount, when, category=None):
    data = {
        "type": txn_type,
        "amount": amount,
        "description": f"{txn_type.lower()} {amount}",
        "paymentMethod": "UPI",
        "payerPayee": "Counterparty",
        "transactionDate": when,
    }
    if category is not None:
        data["categoryId"] = category.id
    return service.create(data, created_by_id=user.id)


def test_monthly_summary_for_one_tenant():
    session = make_session()
    acme, acme_owner = register(session, "owner@acme.test", "Acme")
    globex, globex_owner = register(session, "owner@globex.test", "Globex")
    categories = CategoryService(session, acme.id)
    donations = categories.create({"name": "Donations", "type": "INCOME"})
    utilities = categories.create({"name": "Utilities", "type": "EXPENSE"})
    acme_txns = TransactionService(session, acme.id)

    record(acme_txns, acme_owner, "INCOME", "500.00", "2024-01-03T10:00:00", donations)
    record(acme_txns, acme_owner, "INCOME", "250.00", "2024-01-20T10:00:00", donations)
    record(acme_txns, acme_owner, "EXPENSE", "120.50", "2024-01-11T10:00:00", utilities)
    record(acme_txns, acme_owner, "EXPENSE", "79.50", "2024-01-31T23:00:00")
    record(acme_txns, acme_owner, "INCOME", "999.00", "2024-02-01T00:00:00", donations)
    record(
        TransactionService(session, globex.id),
        globex_owner,
        "INCOME",
        "10000.00",
        "2024-01-15T10:00:00",
    )

    summary = ReportService(session, acme.id).summary("month", datetime(2024, 1, 15))

    assert summary.period.kind == PeriodKind.month
    assert summary.period.start == datetime(2024, 1, 1)
    assert summary.total_income == Decimal("750.00")
    assert summary.total_expenses == Decimal("200.00")
    assert summary.balance == Decimal("550.00")
    assert summary.income_count == 2
    assert summary.expense_count == 2
    assert summary.breakdown_for(TransactionType.income)["Donations"].count == 2
    expenses = summary.breakdown_for(TransactionType.expense)
    assert expenses["Utilities"].total == Decimal("120.50")
    assert expenses[UNCATEGORIZED].total == Decimal("79.50")
    assert {row.organization_id for row in summary.transactions} == {acme.id}


def test_unknown_period_kind_reports_the_month():
    session = make_session()
    org, owner = register(session, "owner@acme.test", "Acme")
    record(TransactionService(session, org.id), owner, "EXPENSE", "5.00", "2024-03-02T08:00:00")

    summary = ReportService(session, org.id).summary("fortnight", datetime(2024, 3, 20))

    assert summary.period.kind == PeriodKind.month
    assert summary.expense_count == 1


def test_weekly_summary_uses_monday_start():
    session = make_session()
    org, owner = register(session, "owner@acme.test", "Acme")
    service = TransactionService(session, org.id)
    record(service, owner, "EXPENSE", "5.00", "2024-03-10T23:59:59")  # Sunday before
    record(service, owner, "EXPENSE", "7.00", "2024-03-11T00:00:00")  # Monday
    record(service, owner, "EXPENSE", "9.00", "2024-03-17T23:59:59")  # Sunday

    summary = ReportService(session, org.id).summary("week", datetime(2024, 3, 13))

    assert summary.total_expenses == Decimal("16.00")
    assert summary.expense_count == 2


def test_acme_salary_and_rent_march_summary():
    session = make_session()
    acme, owner = register(session, "owner@acme.test", "Acme")
    categories = CategoryService(session, acme.id)
    salary = categories.create({"name": "Salary", "type": "INCOME"})
    rent = categories.create({"name": "Rent", "type": "EXPENSE"})
    service = TransactionService(session, acme.id)
    record(service, owner, "INCOME", "5000", "2024-03-01T09:00:00", salary)
    record(service, owner, "EXPENSE", "1200", "2024-03-05T09:00:00", rent)

    payload = ReportService(session, acme.id).summary("month", datetime(2024, 3, 15)).to_dict()

    assert payload["summary"]["totalIncome"] == 5000
    assert payload["summary"]["totalExpenses"] == 1200
    assert payload["summary"]["balance"] == 3800
    assert payload["categoryBreakdown"]["INCOME"]["Salary"]["total"] == 5000
    assert payload["categoryBreakdown"]["EXPENSE"]["Rent"]["total"] == 1200


def test_summary_logs_elapsed_time_from_monotonic_clock(monkeypatch, caplog):
    session = make_session()
    org, owner = register(session, "owner@acme.test", "Acme")
    record(TransactionService(session, org.id), owner, "EXPENSE", "5.00", "2024-03-02T08:00:00")
    ticks = iter([10.0, 12.5])
    monkeypatch.setattr(services, "time", SimpleNamespace(perf_counter=lambda: next(ticks)))

    with caplog.at_level(logging.INFO, logger="services"):
        ReportService(session, org.id).summary("month", datetime(2024, 3, 20))

    messages = [r.getMessage() for r in caplog.records if "report_generated" in r.getMessage()]
    assert len(messages) == 1
    assert "rows=1" in messages[0]
    assert "duration=2.500s" in messages[0]

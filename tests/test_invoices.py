import logging
from datetime import date
from types import SimpleNamespace

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql.dml import Update

from database import Base
from models import InvoiceStatus, Transaction
from schemas import AccountIn, InvoiceIn, InvoicePatch, MarkPaidIn, TransactionPatch
from services import (
    AccountService,
    InvalidReferenceError,
    InvoiceService,
    LedgerWriteError,
    NotFoundError,
    StateConflictError,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session, customer: str = "ACME"):
    account = AccountService(session).create(AccountIn(name="Business"))
    invoice = InvoiceService(session).create(
        InvoiceIn(
            customer_name=customer,
            amount_cents=250000,
            expected_payment_date=date(2025, 5, 20),
            status=InvoiceStatus.sent,
        )
    )
    return account, invoice


def _tx_count(session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_mark_paid_books_income_and_links_it(caplog) -> None:
    session = make_session()
    account, invoice = _setup(session)

    with caplog.at_level(logging.INFO, logger="services"):
        result = InvoiceService(session).mark_paid(
            invoice.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
        )

    assert result.invoice.status == InvoiceStatus.paid
    assert result.invoice.paid_at == date(2025, 5, 22)
    assert result.invoice.paid_tx_id == result.transaction.id
    assert result.transaction.amount_cents == 250000
    assert result.transaction.invoice_id == invoice.id
    assert result.transaction.account_id == account.id
    assert result.transaction.description == "Invoice payment: ACME"
    assert result.transaction.category == "Income"
    assert f"invoice_paid: invoice={invoice.id}" in caplog.text


def test_mark_paid_twice_fails_without_second_transaction() -> None:
    session = make_session()
    account, invoice = _setup(session)
    service = InvoiceService(session)
    payload = MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))

    service.mark_paid(invoice.id, payload)
    with pytest.raises(StateConflictError, match="Already paid"):
        service.mark_paid(invoice.id, payload)

    assert _tx_count(session) == 1


def test_mark_paid_sees_payment_from_another_session(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'shared.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    first, second = SessionLocal(), SessionLocal()
    account, invoice = _setup(first)
    payload = MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))

    # Both sessions have seen the invoice while it was still open.
    assert InvoiceService(second).get(invoice.id).status == InvoiceStatus.sent
    InvoiceService(first).mark_paid(invoice.id, payload)
    with pytest.raises(StateConflictError, match="Already paid"):
        InvoiceService(second).mark_paid(invoice.id, payload)

    assert _tx_count(first) == 1
    first.close()
    second.close()


def test_mark_paid_rejects_void_invoice() -> None:
    session = make_session()
    account, invoice = _setup(session)
    service = InvoiceService(session)
    service.void(invoice.id)

    with pytest.raises(StateConflictError, match="Invoice is void"):
        service.mark_paid(
            invoice.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
        )
    assert _tx_count(session) == 0


def test_mark_paid_checks_references() -> None:
    session = make_session()
    account, invoice = _setup(session)
    service = InvoiceService(session)

    with pytest.raises(InvalidReferenceError):
        service.mark_paid(
            invoice.id, MarkPaidIn(account_id=999, tx_date=date(2025, 5, 22))
        )
    with pytest.raises(NotFoundError, match="Invoice not found"):
        service.mark_paid(
            999, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
        )
    assert service.get(invoice.id).status == InvoiceStatus.sent


def test_mark_paid_description_fallbacks() -> None:
    session = make_session()
    account, invoice = _setup(session, customer="")
    result = InvoiceService(session).mark_paid(
        invoice.id,
        MarkPaidIn(
            account_id=account.id,
            tx_date=date(2025, 5, 22),
            description="  ",
            category="Consulting",
        ),
    )
    assert result.transaction.description == "Invoice payment"
    assert result.transaction.category == "Consulting"


def test_paying_transaction_cannot_be_deleted_or_rebooked() -> None:
    session = make_session()
    account, invoice = _setup(session)
    result = InvoiceService(session).mark_paid(
        invoice.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
    )

    with pytest.raises(StateConflictError):
        TransactionService(session).delete(result.transaction.id)

    txns = TransactionService(session)
    with pytest.raises(StateConflictError, match="settles a paid invoice"):
        txns.update(result.transaction.id, TransactionPatch(amount_cents=1))
    with pytest.raises(StateConflictError, match="settles a paid invoice"):
        txns.update(result.transaction.id, TransactionPatch(account_id=account.id))
    renamed = txns.update(
        result.transaction.id, TransactionPatch(description="ACME May invoice")
    )
    assert renamed.description == "ACME May invoice"
    assert renamed.amount_cents == 250000


def test_failed_settlement_discards_income_transaction(monkeypatch) -> None:
    session = make_session()
    account, invoice = _setup(session)
    execute = session.execute

    def broken_execute(statement, *args, **kwargs):
        if isinstance(statement, Update):
            raise OperationalError(
                "UPDATE invoices", {}, Exception("database is locked")
            )
        return execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", broken_execute)
    with pytest.raises(LedgerWriteError, match="invoice_mark_paid failed"):
        InvoiceService(session).mark_paid(
            invoice.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
        )
    monkeypatch.undo()

    assert _tx_count(session) == 0
    stored = InvoiceService(session).get(invoice.id)
    assert stored.status == InvoiceStatus.sent
    assert stored.paid_tx_id is None


def test_settlement_matching_no_open_invoice_is_already_paid(monkeypatch) -> None:
    session = make_session()
    account, invoice = _setup(session)
    execute = session.execute

    def lost_race(statement, *args, **kwargs):
        if isinstance(statement, Update):
            return SimpleNamespace(rowcount=0)
        return execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", lost_race)
    with pytest.raises(StateConflictError, match="Already paid"):
        InvoiceService(session).mark_paid(
            invoice.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
        )
    monkeypatch.undo()

    assert _tx_count(session) == 0
    assert InvoiceService(session).get(invoice.id).status == InvoiceStatus.sent


def test_new_invoices_must_be_open() -> None:
    with pytest.raises(ValidationError, match="New invoices must be planned or sent"):
        InvoiceIn(amount_cents=100, status=InvoiceStatus.paid)
    with pytest.raises(ValidationError):
        InvoiceIn(amount_cents=0)


def test_status_patch_rules() -> None:
    session = make_session()
    account, invoice = _setup(session)
    service = InvoiceService(session)

    assert (
        service.update(invoice.id, InvoicePatch(status=InvoiceStatus.planned)).status
        == InvoiceStatus.planned
    )
    with pytest.raises(StateConflictError, match="mark-paid"):
        service.update(invoice.id, InvoicePatch(status=InvoiceStatus.paid))

    service.mark_paid(
        invoice.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
    )
    with pytest.raises(StateConflictError, match="Invoice is paid"):
        service.update(invoice.id, InvoicePatch(status=InvoiceStatus.void))
    with pytest.raises(StateConflictError, match="Already paid"):
        service.update(invoice.id, InvoicePatch(amount_cents=1))
    assert service.update(invoice.id, InvoicePatch(notes="thanks")).notes == "thanks"


def test_void_and_delete() -> None:
    session = make_session()
    account, invoice = _setup(session)
    service = InvoiceService(session)

    assert service.void(invoice.id).status == InvoiceStatus.void
    with pytest.raises(StateConflictError, match="Invoice is void"):
        service.update(invoice.id, InvoicePatch(status=InvoiceStatus.sent))
    service.delete(invoice.id)
    with pytest.raises(NotFoundError):
        service.get(invoice.id)

    other = service.create(InvoiceIn(amount_cents=500))
    service.mark_paid(
        other.id, MarkPaidIn(account_id=account.id, tx_date=date(2025, 5, 22))
    )
    with pytest.raises(StateConflictError, match="Already paid"):
        service.void(other.id)
    with pytest.raises(StateConflictError):
        service.delete(other.id)


def test_list_filters_by_status() -> None:
    session = make_session()
    service = InvoiceService(session)
    service.create(InvoiceIn(customer_name="a", amount_cents=100))
    sent = service.create(
        InvoiceIn(customer_name="b", amount_cents=100, status=InvoiceStatus.sent)
    )

    assert [i.id for i in service.list(InvoiceStatus.sent)] == [sent.id]
    assert len(service.list()) == 2

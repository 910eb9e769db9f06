from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from pydantic import BaseModel
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased, joinedload

from models import (
    OPEN_INVOICE_STATUSES,
    Account,
    Budget,
    CommissionRule,
    CommissionRuleVersion,
    IncomeProfile,
    Invoice,
    InvoiceStatus,
    RecurringRule,
    SalarySetting,
    Tag,
    Transaction,
    TransferLeg,
    transaction_tags,
)
from periods import MonthWindow, local_today, month_bounds
from recurrence import CashEvent, active_salary, plan_events
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CommissionRuleIn,
    CommissionRuleVersionIn,
    IncomeProfileIn,
    IncomeProfilePatch,
    InvoiceIn,
    InvoicePatch,
    MarkPaidIn,
    RecurringRuleIn,
    RecurringRulePatch,
    SalaryIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)

logger = logging.getLogger(__name__)

TRANSFER_CATEGORY = "Transfer"


class NotFoundError(ValueError):
    pass


class InvalidReferenceError(NotFoundError):
    """A referenced row is missing or belongs to someone else."""


class StateConflictError(ValueError):
    pass


class LedgerWriteError(RuntimeError):
    pass


def get_current_user_id() -> int:
    return 1


def cents_to_euros(cents: int) -> float:
    return cents / 100


@contextmanager
def _atomic(session: Session, action: str) -> Iterator[None]:
    try:
        yield
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"{action}: rolled back ({exc.__class__.__name__})")
        raise LedgerWriteError(f"{action} failed") from exc
    except Exception:
        session.rollback()
        raise


def _owned_account(session: Session, user_id: int, account_id: int) -> Account:
    account = session.get(Account, account_id)
    if not account or account.user_id != user_id:
        raise InvalidReferenceError("Invalid account reference")
    return account


def _owned_profile(session: Session, user_id: int, profile_id: int) -> IncomeProfile:
    profile = session.get(IncomeProfile, profile_id)
    if not profile or profile.user_id != user_id:
        raise InvalidReferenceError("Invalid profile reference")
    return profile


def _patch_changes(
    patch: BaseModel, *, nullable: frozenset[str] = frozenset()
) -> dict[str, object]:
    changes = patch.model_dump(exclude_unset=True)
    if not changes:
        raise ValueError("No changes")
    for name, value in changes.items():
        if value is None and name not in nullable:
            raise ValueError(f"{name} cannot be empty")
    return changes


def _touches_account(account_id: int):
    return or_(
        Transaction.account_id == account_id,
        Transaction.from_account_id == account_id,
        Transaction.to_account_id == account_id,
    )


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            tag = self.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags


@dataclass
class AccountBalance:
    account: Account
    movement_cents: int
    balance_cents: int


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(user_id=self.user_id, **data.model_dump())
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountPatch) -> Account:
        account = self.get(account_id)
        changes = _patch_changes(data, nullable=frozenset({"color", "iban"}))
        for name, value in changes.items():
            setattr(account, name, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        if self.session.scalar(
            select(func.count(Transaction.id)).where(_touches_account(account.id))
        ):
            raise StateConflictError("Account is still referenced by transactions")
        for model in (RecurringRule, Budget):
            if self.session.scalar(
                select(func.count(model.id)).where(model.account_id == account.id)
            ):
                raise StateConflictError(
                    f"Account is still referenced by {model.__tablename__}"
                )
        self.session.delete(account)
        self.session.commit()

    def balances(self) -> list[AccountBalance]:
        movement = func.coalesce(func.sum(Transaction.amount_cents), 0).label(
            "movement"
        )
        stmt = (
            select(Account, movement)
            .outerjoin(
                Transaction,
                and_(
                    Transaction.account_id == Account.id,
                    Transaction.user_id == Account.user_id,
                ),
            )
            .where(Account.user_id == self.user_id)
            .group_by(Account.id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        result: list[AccountBalance] = []
        for account, moved in self.session.execute(stmt):
            moved = int(moved or 0)
            result.append(
                AccountBalance(
                    account=account,
                    movement_cents=moved,
                    balance_cents=account.initial_balance_cents + moved,
                )
            )
        return result


@dataclass
class TransferPair:
    transfer_group_id: str
    out_leg: Transaction
    in_leg: Transaction


@dataclass
class LedgerEntry:
    """One row of the ledger list; a transfer is folded into a single entry."""

    kind: str  # "NORMAL" | "TRANSFER"
    tx_date: date
    created_at: datetime
    amount_cents: int
    description: str
    category: Optional[str]
    is_business: bool
    is_tax_relevant: bool
    id: Optional[int] = None
    account_id: Optional[int] = None
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    transfer_group_id: Optional[str] = None
    tags: list[str] = field(default_factory=list)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def _get_normal(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        # Transfer legs are only ever deleted and recreated as a pair.
        if txn.transfer_group_id is not None:
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        _owned_account(self.session, self.user_id, data.account_id)
        with _atomic(self.session, "transaction_create"):
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                tx_date=data.tx_date,
                amount_cents=data.amount_cents,
                description=data.description,
                category=data.category,
                is_business=data.is_business,
                is_tax_relevant=data.is_tax_relevant,
            )
            txn.tags = TagService(self.session, self.user_id).resolve(data.tags)
            self.session.add(txn)
            self.session.flush()
        self.session.refresh(txn)
        return txn

    def _settles_paid_invoice(self, txn: Transaction) -> bool:
        if txn.invoice_id is None:
            return False
        invoice = self.session.get(Invoice, txn.invoice_id)
        return invoice is not None and invoice.paid_tx_id == txn.id

    def update(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        changes = _patch_changes(data, nullable=frozenset({"category"}))
        txn = self._get_normal(transaction_id)
        if self._settles_paid_invoice(txn) and changes.keys() & {
            "amount_cents",
            "account_id",
        }:
            raise StateConflictError("Transaction settles a paid invoice")
        if "account_id" in changes:
            _owned_account(self.session, self.user_id, changes["account_id"])
        with _atomic(self.session, "transaction_update"):
            for name, value in changes.items():
                setattr(txn, name, value)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self._get_normal(transaction_id)
        if self._settles_paid_invoice(txn):
            raise StateConflictError("Transaction settles a paid invoice")
        with _atomic(self.session, "transaction_delete"):
            self.session.delete(txn)

    def create_transfer(self, data: TransferIn) -> TransferPair:
        _owned_account(self.session, self.user_id, data.from_account_id)
        _owned_account(self.session, self.user_id, data.to_account_id)

        group_id = str(uuid.uuid4())
        amount = abs(data.amount_cents)
        shared = dict(
            user_id=self.user_id,
            tx_date=data.tx_date,
            description=data.description,
            category=data.category or TRANSFER_CATEGORY,
            is_business=data.is_business,
            is_tax_relevant=data.is_tax_relevant,
            transfer_group_id=group_id,
        )
        with _atomic(self.session, "transfer_create"):
            tags = TagService(self.session, self.user_id).resolve(data.tags)
            out_leg = Transaction(
                account_id=data.from_account_id,
                amount_cents=-amount,
                transfer_leg=TransferLeg.out,
                **shared,
            )
            in_leg = Transaction(
                account_id=data.to_account_id,
                amount_cents=amount,
                transfer_leg=TransferLeg.in_,
                **shared,
            )
            out_leg.tags = list(tags)
            in_leg.tags = list(tags)
            self.session.add_all([out_leg, in_leg])
            self.session.flush()
        logger.info(
            f"transfer_created: group={group_id} from={data.from_account_id} "
            f"to={data.to_account_id} amount_cents={amount}"
        )
        return TransferPair(transfer_group_id=group_id, out_leg=out_leg, in_leg=in_leg)

    def delete_transfer(self, transfer_group_id: str) -> int:
        in_group = and_(
            Transaction.user_id == self.user_id,
            Transaction.transfer_group_id == transfer_group_id,
        )
        with _atomic(self.session, "transfer_delete"):
            self.session.execute(
                delete(transaction_tags).where(
                    transaction_tags.c.transaction_id.in_(
                        select(Transaction.id).where(in_group)
                    )
                )
            )
            result = self.session.execute(
                delete(Transaction)
                .where(in_group)
                .execution_options(synchronize_session="fetch")
            )
            deleted = result.rowcount or 0
            if deleted == 0:
                raise NotFoundError("Transfer not found")
        if deleted != 2:
            logger.warning(
                f"transfer_delete: group={transfer_group_id} removed {deleted} legs, expected 2"
            )
        return deleted

    def list(
        self,
        *,
        account_id: Optional[int] = None,
        category: Optional[str] = None,
        is_business: Optional[bool] = None,
        is_tax_relevant: Optional[bool] = None,
        limit: int = 500,
    ) -> list[LedgerEntry]:
        normal_stmt = (
            select(Transaction)
            .options(joinedload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.transfer_group_id.is_(None),
            )
            .order_by(Transaction.tx_date.desc(), Transaction.created_at.desc())
            .limit(limit)
        )
        if account_id is not None:
            normal_stmt = normal_stmt.where(Transaction.account_id == account_id)
        if category:
            normal_stmt = normal_stmt.where(Transaction.category == category)
        if is_business is not None:
            normal_stmt = normal_stmt.where(Transaction.is_business == is_business)
        if is_tax_relevant is not None:
            normal_stmt = normal_stmt.where(
                Transaction.is_tax_relevant == is_tax_relevant
            )

        OutLeg = aliased(Transaction)
        InLeg = aliased(Transaction)
        transfer_stmt = (
            select(OutLeg, InLeg)
            .join(
                InLeg,
                and_(
                    InLeg.transfer_group_id == OutLeg.transfer_group_id,
                    InLeg.user_id == OutLeg.user_id,
                    InLeg.transfer_leg == TransferLeg.in_,
                ),
            )
            .where(OutLeg.user_id == self.user_id, OutLeg.transfer_leg == TransferLeg.out)
            .order_by(OutLeg.tx_date.desc(), OutLeg.created_at.desc())
            .limit(limit)
        )
        if account_id is not None:
            transfer_stmt = transfer_stmt.where(
                or_(OutLeg.account_id == account_id, InLeg.account_id == account_id)
            )
        if category:
            transfer_stmt = transfer_stmt.where(OutLeg.category == category)
        if is_business is not None:
            transfer_stmt = transfer_stmt.where(OutLeg.is_business == is_business)
        if is_tax_relevant is not None:
            transfer_stmt = transfer_stmt.where(
                OutLeg.is_tax_relevant == is_tax_relevant
            )

        entries = [
            LedgerEntry(
                kind="NORMAL",
                id=txn.id,
                tx_date=txn.tx_date,
                created_at=txn.created_at,
                amount_cents=txn.amount_cents,
                description=txn.description,
                category=txn.category,
                is_business=txn.is_business,
                is_tax_relevant=txn.is_tax_relevant,
                account_id=txn.account_id,
                tags=[t.name for t in txn.tags],
            )
            for txn in self.session.scalars(normal_stmt).unique()
        ]
        for out_leg, in_leg in self.session.execute(transfer_stmt):
            entries.append(
                LedgerEntry(
                    kind="TRANSFER",
                    tx_date=out_leg.tx_date,
                    created_at=min(out_leg.created_at, in_leg.created_at),
                    amount_cents=in_leg.amount_cents,
                    description=out_leg.description,
                    category=out_leg.category,
                    is_business=out_leg.is_business or in_leg.is_business,
                    is_tax_relevant=out_leg.is_tax_relevant or in_leg.is_tax_relevant,
                    from_account_id=out_leg.account_id,
                    to_account_id=in_leg.account_id,
                    transfer_group_id=out_leg.transfer_group_id,
                )
            )
        entries.sort(key=lambda e: (e.tx_date, e.created_at), reverse=True)
        return entries[:limit]


@dataclass
class PaidInvoice:
    invoice: Invoice
    transaction: Transaction


class InvoiceService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, invoice_id: int) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if not invoice or invoice.user_id != self.user_id:
            raise NotFoundError("Invoice not found")
        return invoice

    def list(self, status: Optional[InvoiceStatus] = None) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.user_id == self.user_id)
            .order_by(
                Invoice.expected_payment_date.is_(None),
                Invoice.expected_payment_date,
                Invoice.created_at.desc(),
            )
        )
        if status:
            stmt = stmt.where(Invoice.status == status)
        return self.session.scalars(stmt).all()

    def create(self, data: InvoiceIn) -> Invoice:
        if data.profile_id is not None:
            _owned_profile(self.session, self.user_id, data.profile_id)
        invoice = Invoice(user_id=self.user_id, **data.model_dump())
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def update(self, invoice_id: int, data: InvoicePatch) -> Invoice:
        changes = _patch_changes(
            data,
            nullable=frozenset(
                {
                    "profile_id",
                    "service_date",
                    "issued_at",
                    "due_date",
                    "expected_payment_date",
                    "notes",
                }
            ),
        )
        invoice = self.get(invoice_id)
        new_status = changes.get("status")
        if new_status is not None and new_status != invoice.status:
            if invoice.status in (InvoiceStatus.paid, InvoiceStatus.void):
                raise StateConflictError(f"Invoice is {invoice.status.value}")
            if new_status == InvoiceStatus.paid:
                raise StateConflictError("Invoices are settled through mark-paid")
        if invoice.status == InvoiceStatus.paid and "amount_cents" in changes:
            raise StateConflictError("Already paid")
        if changes.get("profile_id") is not None:
            _owned_profile(self.session, self.user_id, changes["profile_id"])
        for name, value in changes.items():
            setattr(invoice, name, value)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def void(self, invoice_id: int) -> Invoice:
        invoice = self.get(invoice_id)
        if invoice.status == InvoiceStatus.paid:
            raise StateConflictError("Already paid")
        if invoice.status != InvoiceStatus.void:
            invoice.status = InvoiceStatus.void
            self.session.commit()
            self.session.refresh(invoice)
        return invoice

    def delete(self, invoice_id: int) -> None:
        invoice = self.get(invoice_id)
        if invoice.status == InvoiceStatus.paid:
            raise StateConflictError("Paid invoices cannot be deleted")
        self.session.delete(invoice)
        self.session.commit()

    def mark_paid(self, invoice_id: int, data: MarkPaidIn) -> PaidInvoice:
        """Book the payment of an invoice and settle it in one unit of work.

        The invoice row is locked for the duration, and the final status update
        only matches invoices that are still open, so a concurrent second call
        fails with ``StateConflictError("Already paid")`` instead of creating a
        second transaction.
        """
        _owned_account(self.session, self.user_id, data.account_id)
        with _atomic(self.session, "invoice_mark_paid"):
            invoice = self.session.scalar(
                select(Invoice)
                .where(Invoice.user_id == self.user_id, Invoice.id == invoice_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if not invoice:
                raise NotFoundError("Invoice not found")
            if invoice.status == InvoiceStatus.void:
                raise StateConflictError("Invoice is void")
            if invoice.status == InvoiceStatus.paid:
                raise StateConflictError("Already paid")

            description = (data.description or "").strip()
            if not description:
                description = (
                    f"Invoice payment: {invoice.customer_name}"
                    if invoice.customer_name
                    else "Invoice payment"
                )
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                tx_date=data.tx_date,
                amount_cents=abs(invoice.amount_cents),
                description=description,
                category=data.category,
                is_business=data.is_business,
                is_tax_relevant=data.is_tax_relevant,
                invoice_id=invoice.id,
            )
            txn.tags = TagService(self.session, self.user_id).resolve(data.tags)
            self.session.add(txn)
            self.session.flush()

            settled = self.session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice.id,
                    Invoice.user_id == self.user_id,
                    Invoice.status.in_(OPEN_INVOICE_STATUSES),
                )
                .values(
                    status=InvoiceStatus.paid,
                    paid_at=data.tx_date,
                    paid_tx_id=txn.id,
                )
                .execution_options(synchronize_session=False)
            )
            if settled.rowcount != 1:
                raise StateConflictError("Already paid")
        self.session.refresh(invoice)
        self.session.refresh(txn)
        logger.info(
            f"invoice_paid: invoice={invoice.id} tx={txn.id} amount_cents={txn.amount_cents}"
        )
        return PaidInvoice(invoice=invoice, transaction=txn)


class IncomeProfileService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[IncomeProfile]:
        stmt = (
            select(IncomeProfile)
            .where(IncomeProfile.user_id == self.user_id)
            .order_by(IncomeProfile.created_at.desc(), IncomeProfile.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, profile_id: int) -> IncomeProfile:
        profile = self.session.get(IncomeProfile, profile_id)
        if not profile or profile.user_id != self.user_id:
            raise NotFoundError("Income profile not found")
        return profile

    def create(self, data: IncomeProfileIn) -> IncomeProfile:
        profile = IncomeProfile(user_id=self.user_id, **data.model_dump())
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def update(self, profile_id: int, data: IncomeProfilePatch) -> IncomeProfile:
        changes = _patch_changes(data)
        profile = self.get(profile_id)
        for name, value in changes.items():
            setattr(profile, name, value)
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def delete(self, profile_id: int) -> None:
        profile = self.get(profile_id)
        for model in (SalarySetting, Invoice, CommissionRule):
            if self.session.scalar(
                select(func.count(model.id)).where(model.profile_id == profile.id)
            ):
                raise StateConflictError(
                    f"Income profile is still referenced by {model.__tablename__}"
                )
        self.session.delete(profile)
        self.session.commit()


class SalaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[SalarySetting]:
        stmt = (
            select(SalarySetting)
            .where(SalarySetting.user_id == self.user_id)
            .order_by(SalarySetting.created_at.desc(), SalarySetting.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get_active(self) -> Optional[SalarySetting]:
        return active_salary(self.session, self.user_id)

    def upsert(self, data: SalaryIn) -> SalarySetting:
        _owned_profile(self.session, self.user_id, data.profile_id)
        values = data.model_dump()
        existing = self.get_active() if data.is_active else None
        with _atomic(self.session, "salary_upsert"):
            if existing:
                for name, value in values.items():
                    setattr(existing, name, value)
                setting = existing
            else:
                setting = SalarySetting(user_id=self.user_id, **values)
                self.session.add(setting)
            self.session.flush()
        self.session.refresh(setting)
        return setting

    def delete(self, setting_id: int) -> None:
        setting = self.session.get(SalarySetting, setting_id)
        if not setting or setting.user_id != self.user_id:
            raise NotFoundError("Salary setting not found")
        self.session.delete(setting)
        self.session.commit()


class RecurringRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise NotFoundError("Rule not found")
        return rule

    def list(self) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(RecurringRule.user_id == self.user_id)
            .order_by(RecurringRule.start_date, RecurringRule.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        _owned_account(self.session, self.user_id, data.account_id)
        rule = RecurringRule(user_id=self.user_id, **data.model_dump())
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RecurringRulePatch) -> RecurringRule:
        changes = _patch_changes(
            data, nullable=frozenset({"category", "day_of_month", "end_date"})
        )
        rule = self.get(rule_id)
        if "account_id" in changes:
            _owned_account(self.session, self.user_id, changes["account_id"])
        start = changes.get("start_date", rule.start_date)
        end = changes.get("end_date", rule.end_date)
        if end is not None and end < start:
            raise ValueError("end_date must be on or after start_date")
        for name, value in changes.items():
            setattr(rule, name, value)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()


@dataclass
class BudgetUsage:
    budget: Budget
    used_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.budget.planned_amount_cents - self.used_cents


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.period_start.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: BudgetIn) -> Budget:
        if data.account_id is not None:
            _owned_account(self.session, self.user_id, data.account_id)
        budget = Budget(user_id=self.user_id, **data.model_dump())
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetPatch) -> Budget:
        changes = _patch_changes(data, nullable=frozenset({"account_id"}))
        budget = self.get(budget_id)
        if changes.get("account_id") is not None:
            _owned_account(self.session, self.user_id, changes["account_id"])
        start = changes.get("period_start", budget.period_start)
        end = changes.get("period_end", budget.period_end)
        if end < start:
            raise ValueError("period_end must be on or after period_start")
        for name, value in changes.items():
            setattr(budget, name, value)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def overview(self) -> list[BudgetUsage]:
        # Used amount is always derived from the ledger, never stored.
        used = (
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (Transaction.amount_cents < 0, -Transaction.amount_cents),
                            else_=0,
                        )
                    ),
                    0,
                )
            )
            .where(
                Transaction.user_id == Budget.user_id,
                Transaction.category == Budget.category,
                or_(
                    Budget.account_id.is_(None),
                    Transaction.account_id == Budget.account_id,
                ),
                Transaction.tx_date.between(Budget.period_start, Budget.period_end),
            )
            .correlate(Budget)
            .scalar_subquery()
        )
        stmt = (
            select(Budget, used.label("used"))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.period_start.desc(), Budget.id.desc())
        )
        return [
            BudgetUsage(budget=budget, used_cents=int(used_cents or 0))
            for budget, used_cents in self.session.execute(stmt)
        ]


class CommissionRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, rule_id: int) -> CommissionRule:
        rule = self.session.get(CommissionRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise NotFoundError("Commission rule not found")
        return rule

    def list(self) -> list[CommissionRule]:
        stmt = (
            select(CommissionRule)
            .where(CommissionRule.user_id == self.user_id)
            .order_by(CommissionRule.created_at.desc(), CommissionRule.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CommissionRuleIn) -> CommissionRule:
        if data.profile_id is not None:
            _owned_profile(self.session, self.user_id, data.profile_id)
        rule = CommissionRule(user_id=self.user_id, **data.model_dump())
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def list_versions(self, rule_id: int) -> list[CommissionRuleVersion]:
        rule = self.get(rule_id)
        stmt = (
            select(CommissionRuleVersion)
            .where(
                CommissionRuleVersion.user_id == self.user_id,
                CommissionRuleVersion.commission_rule_id == rule.id,
            )
            .order_by(CommissionRuleVersion.valid_from.desc())
        )
        return self.session.scalars(stmt).all()

    def add_version(
        self, rule_id: int, data: CommissionRuleVersionIn
    ) -> CommissionRuleVersion:
        if data.valid_to is not None and data.valid_to <= data.valid_from:
            raise ValueError("valid_to must be after valid_from")
        with _atomic(self.session, "commission_version_add"):
            rule = self.session.scalar(
                select(CommissionRule)
                .where(
                    CommissionRule.user_id == self.user_id,
                    CommissionRule.id == rule_id,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if not rule:
                raise NotFoundError("Commission rule not found")

            # [a, b) and [c, d) overlap iff a < d and c < b, NULL bounds are open.
            overlap = select(CommissionRuleVersion.id).where(
                CommissionRuleVersion.commission_rule_id == rule.id,
                or_(
                    CommissionRuleVersion.valid_to.is_(None),
                    CommissionRuleVersion.valid_to > data.valid_from,
                ),
            )
            if data.valid_to is not None:
                overlap = overlap.where(CommissionRuleVersion.valid_from < data.valid_to)
            if self.session.scalar(overlap.limit(1)) is not None:
                raise StateConflictError("Version overlaps an existing version")

            version = CommissionRuleVersion(
                user_id=self.user_id,
                commission_rule_id=rule.id,
                valid_from=data.valid_from,
                valid_to=data.valid_to,
                rule_json=data.rule_json,
            )
            self.session.add(version)
            self.session.flush()
        self.session.refresh(version)
        return version


@dataclass
class Totals:
    income_cents: int = 0
    expense_cents: int = 0
    net_cents: int = 0

    def as_dict(self) -> dict[str, float]:
        return {
            "income": cents_to_euros(self.income_cents),
            "expense": cents_to_euros(self.expense_cents),
            "net": cents_to_euros(self.net_cents),
        }


@dataclass
class DayTotals:
    date: date
    income_cents: int = 0
    expense_cents: int = 0
    net_cents: int = 0

    def book(self, amount_cents: int) -> None:
        if amount_cents >= 0:
            self.income_cents += amount_cents
        else:
            self.expense_cents += -amount_cents
        self.net_cents += amount_cents

    def _base_dict(self) -> dict[str, object]:
        return {
            "date": self.date.isoformat(),
            "income": cents_to_euros(self.income_cents),
            "expense": cents_to_euros(self.expense_cents),
            "net": cents_to_euros(self.net_cents),
        }


def _sum_totals(days: list[DayTotals]) -> Totals:
    totals = Totals()
    for day in days:
        totals.income_cents += day.income_cents
        totals.expense_cents += day.expense_cents
        totals.net_cents += day.net_cents
    return totals


@dataclass
class PlanDay(DayTotals):
    events: list[CashEvent] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        payload = self._base_dict()
        payload["events"] = [event.as_dict() for event in self.events]
        return payload


@dataclass
class PlanMonth:
    month: str
    start_date: date
    end_date_exclusive: date
    totals: Totals
    days: list[PlanDay]

    def as_dict(self) -> dict[str, object]:
        return {
            "month": self.month,
            "startDate": self.start_date.isoformat(),
            "endDateExclusive": self.end_date_exclusive.isoformat(),
            "totals": self.totals.as_dict(),
            "days": [day.as_dict() for day in self.days],
        }


def _tx_payload(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "txDate": txn.tx_date.isoformat(),
        "accountId": txn.account_id,
        "fromAccountId": txn.from_account_id,
        "toAccountId": txn.to_account_id,
        "amount": cents_to_euros(txn.amount_cents),
        "description": txn.description,
        "category": txn.category,
        "transferGroupId": txn.transfer_group_id,
        "transferLeg": txn.transfer_leg.value if txn.transfer_leg else None,
        "invoiceId": txn.invoice_id,
    }


@dataclass
class TxItem:
    tx: Transaction
    kind: str = "tx"

    def as_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "tx": _tx_payload(self.tx)}


@dataclass
class TransferItem:
    transfer_group_id: str
    date: date
    legs: list[Transaction]
    net_cents: int
    title: str = "Transfer"
    kind: str = "transfer"

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "transferGroupId": self.transfer_group_id,
            "date": self.date.isoformat(),
            "title": self.title,
            "legs": [_tx_payload(leg) for leg in self.legs],
            "net": cents_to_euros(self.net_cents),
        }


@dataclass
class ActualDay(DayTotals):
    items: list[TxItem | TransferItem] = field(default_factory=list)
    running_balance_cents: int = 0

    def as_dict(self) -> dict[str, object]:
        payload = self._base_dict()
        payload["items"] = [item.as_dict() for item in self.items]
        payload["runningBalance"] = cents_to_euros(self.running_balance_cents)
        return payload


@dataclass
class ActualMonth:
    month: str
    start_date: date
    end_date_exclusive: date
    opening_balance_cents: int
    closing_balance_cents: int
    totals: Totals
    days: list[ActualDay]

    def as_dict(self) -> dict[str, object]:
        return {
            "month": self.month,
            "startDate": self.start_date.isoformat(),
            "endDateExclusive": self.end_date_exclusive.isoformat(),
            "openingBalance": cents_to_euros(self.opening_balance_cents),
            "closingBalance": cents_to_euros(self.closing_balance_cents),
            "totals": self.totals.as_dict(),
            "days": [day.as_dict() for day in self.days],
        }


@dataclass
class DashboardSummary:
    since: date
    total_balance_cents: int
    cashflow_cents: int
    income_cents: int
    expense_cents: int

    def as_dict(self) -> dict[str, object]:
        return {
            "since": self.since.isoformat(),
            "totalBalance": cents_to_euros(self.total_balance_cents),
            "cashflow30d": cents_to_euros(self.cashflow_cents),
            "income30d": cents_to_euros(self.income_cents),
            "expense30d": cents_to_euros(self.expense_cents),
        }


class CashflowService:
    """Builds day-by-day month views: a forward plan and the recorded actuals."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def plan_month(self, month: str) -> PlanMonth:
        window = month_bounds(month)
        events = plan_events(self.session, self.user_id, window)

        days = {d: PlanDay(date=d) for d in window.days()}
        for event in events:
            day = days.get(event.date)
            if day is None:
                continue
            day.events.append(event)
            day.book(event.amount_cents)

        ordered = sorted(days.values(), key=lambda d: d.date)
        return PlanMonth(
            month=window.month,
            start_date=window.start,
            end_date_exclusive=window.end_exclusive,
            totals=_sum_totals(ordered),
            days=ordered,
        )

    def opening_balance(self, start: date, account_id: Optional[int] = None) -> int:
        before = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id, Transaction.tx_date < start
        )
        if account_id is not None:
            account = _owned_account(self.session, self.user_id, account_id)
            before = before.where(_touches_account(account.id))
            return account.initial_balance_cents + int(
                self.session.execute(before).scalar_one()
            )

        initial = select(
            func.coalesce(func.sum(Account.initial_balance_cents), 0)
        ).where(Account.user_id == self.user_id)
        return int(self.session.execute(initial).scalar_one()) + int(
            self.session.execute(before).scalar_one()
        )

    def dashboard_summary(self, today: Optional[date] = None) -> DashboardSummary:
        since = (today or local_today()) - timedelta(days=30)
        total = sum(
            row.balance_cents
            for row in AccountService(self.session, self.user_id).balances()
        )

        # Transfer legs move the cashflow by zero but are not income or expense.
        not_transfer = Transaction.transfer_group_id.is_(None)
        stmt = select(
            func.coalesce(func.sum(Transaction.amount_cents), 0),
            func.coalesce(
                func.sum(
                    case(
                        (
                            and_(not_transfer, Transaction.amount_cents > 0),
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
            func.coalesce(
                func.sum(
                    case(
                        (
                            and_(not_transfer, Transaction.amount_cents < 0),
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(Transaction.user_id == self.user_id, Transaction.tx_date >= since)
        cashflow, income, expense = self.session.execute(stmt).one()
        return DashboardSummary(
            since=since,
            total_balance_cents=total,
            cashflow_cents=int(cashflow),
            income_cents=int(income),
            expense_cents=int(expense),
        )

    def _month_transactions(
        self, window: MonthWindow, account_id: Optional[int]
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.tx_date >= window.start,
                Transaction.tx_date < window.end_exclusive,
            )
            .order_by(Transaction.tx_date, Transaction.created_at, Transaction.id)
        )
        if account_id is not None:
            stmt = stmt.where(_touches_account(account_id))
        return self.session.scalars(stmt).all()

    def actual_month(self, month: str, account_id: Optional[int] = None) -> ActualMonth:
        window = month_bounds(month)
        opening = self.opening_balance(window.start, account_id)
        rows = self._month_transactions(window, account_id)

        normals: list[Transaction] = []
        transfers: dict[str, list[Transaction]] = {}
        for row in rows:
            if row.transfer_group_id:
                transfers.setdefault(row.transfer_group_id, []).append(row)
            else:
                normals.append(row)

        days = {d: ActualDay(date=d) for d in window.days()}

        for txn in normals:
            day = days.get(txn.tx_date)
            if day is None:
                continue
            day.book(txn.amount_cents)
            day.items.append(TxItem(tx=txn))

        # With an account filter only that account's legs are loaded, so the
        # net is the signed effect on it; across all accounts it nets to zero.
        for group_id, legs in transfers.items():
            on = legs[0].tx_date
            day = days.get(on)
            if day is None:
                continue
            net = sum(leg.amount_cents for leg in legs)
            day.book(net)
            day.items.append(
                TransferItem(
                    transfer_group_id=group_id,
                    date=on,
                    legs=sorted(legs, key=lambda leg: leg.amount_cents),
                    net_cents=net,
                )
            )

        for day in days.values():
            day.items.sort(key=lambda item: 0 if item.kind == "transfer" else 1)

        ordered = sorted(days.values(), key=lambda d: d.date)
        running = opening
        for day in ordered:
            running += day.net_cents
            day.running_balance_cents = running

        return ActualMonth(
            month=window.month,
            start_date=window.start,
            end_date_exclusive=window.end_exclusive,
            opening_balance_cents=opening,
            closing_balance_cents=running,
            totals=_sum_totals(ordered),
            days=ordered,
        )

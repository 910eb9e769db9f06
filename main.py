import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db, init_db
from models import InvoiceStatus
from periods import current_month
from schemas import (
    AccountBalanceOut,
    AccountIn,
    AccountOut,
    AccountPatch,
    BudgetIn,
    BudgetOut,
    BudgetPatch,
    BudgetUsageOut,
    CommissionRuleIn,
    CommissionRuleOut,
    CommissionRuleVersionIn,
    CommissionRuleVersionOut,
    IncomeProfileIn,
    IncomeProfileOut,
    IncomeProfilePatch,
    InvoiceIn,
    InvoiceOut,
    InvoicePatch,
    LedgerEntryOut,
    MarkPaidIn,
    PaidInvoiceOut,
    RecurringRuleIn,
    RecurringRuleOut,
    RecurringRulePatch,
    SalaryIn,
    SalaryOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
    TransferIn,
    TransferOut,
)
from services import (
    AccountService,
    BudgetService,
    CashflowService,
    CommissionRuleService,
    IncomeProfileService,
    InvoiceService,
    LedgerWriteError,
    NotFoundError,
    RecurringRuleService,
    SalaryService,
    StateConflictError,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cash-flow Planner")


@app.on_event("startup")
def startup_event():
    init_db()


@app.exception_handler(LedgerWriteError)
async def ledger_write_error_handler(request: Request, exc: LedgerWriteError):
    logger.error(f"ledger_write_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StateConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/api/cashflow/plan")
def cashflow_plan(month: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        result = CashflowService(db).plan_month(month or current_month())
    except ValueError as exc:
        raise _http_error(exc) from exc
    return result.as_dict()


@app.get("/api/cashflow/actual")
def cashflow_actual(
    month: Optional[str] = None,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        result = CashflowService(db).actual_month(
            month or current_month(), account_id=account_id
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return result.as_dict()


@app.get("/api/dashboard/summary")
def dashboard_summary(db: Session = Depends(get_db)):
    return CashflowService(db).dashboard_summary().as_dict()


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list()


@app.get("/api/accounts/balances", response_model=list[AccountBalanceOut])
def account_balances(db: Session = Depends(get_db)):
    rows = AccountService(db).balances()
    return [AccountBalanceOut.model_validate(row) for row in rows]


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(payload)


@app.patch("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int, payload: AccountPatch, db: Session = Depends(get_db)
):
    try:
        return AccountService(db).update(account_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions", response_model=list[LedgerEntryOut])
def list_transactions(
    account_id: Optional[int] = None,
    category: Optional[str] = None,
    is_business: Optional[bool] = None,
    is_tax_relevant: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    entries = TransactionService(db).list(
        account_id=account_id,
        category=category,
        is_business=is_business,
        is_tax_relevant=is_tax_relevant,
    )
    return [LedgerEntryOut.model_validate(entry) for entry in entries]


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, payload: TransactionPatch, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/transfers", response_model=TransferOut, status_code=201)
def create_transfer(payload: TransferIn, db: Session = Depends(get_db)):
    try:
        pair = TransactionService(db).create_transfer(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return TransferOut.model_validate(pair)


@app.delete("/api/transfers/{transfer_group_id}")
def delete_transfer(transfer_group_id: str, db: Session = Depends(get_db)):
    try:
        deleted = TransactionService(db).delete_transfer(transfer_group_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"deleted": deleted}


@app.get("/api/recurring", response_model=list[RecurringRuleOut])
def list_recurring(db: Session = Depends(get_db)):
    return RecurringRuleService(db).list()


@app.post("/api/recurring", response_model=RecurringRuleOut, status_code=201)
def create_recurring(payload: RecurringRuleIn, db: Session = Depends(get_db)):
    try:
        return RecurringRuleService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/recurring/{rule_id}", response_model=RecurringRuleOut)
def update_recurring(
    rule_id: int, payload: RecurringRulePatch, db: Session = Depends(get_db)
):
    try:
        return RecurringRuleService(db).update(rule_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/recurring/{rule_id}", status_code=204)
def delete_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        RecurringRuleService(db).delete(rule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(db: Session = Depends(get_db)):
    return BudgetService(db).list()


@app.get("/api/budgets/overview", response_model=list[BudgetUsageOut])
def budgets_overview(db: Session = Depends(get_db)):
    rows = BudgetService(db).overview()
    return [BudgetUsageOut.model_validate(row) for row in rows]


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(budget_id: int, payload: BudgetPatch, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).update(budget_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/income/profiles", response_model=list[IncomeProfileOut])
def list_income_profiles(db: Session = Depends(get_db)):
    return IncomeProfileService(db).list()


@app.post("/api/income/profiles", response_model=IncomeProfileOut, status_code=201)
def create_income_profile(payload: IncomeProfileIn, db: Session = Depends(get_db)):
    return IncomeProfileService(db).create(payload)


@app.patch("/api/income/profiles/{profile_id}", response_model=IncomeProfileOut)
def update_income_profile(
    profile_id: int, payload: IncomeProfilePatch, db: Session = Depends(get_db)
):
    try:
        return IncomeProfileService(db).update(profile_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/income/profiles/{profile_id}", status_code=204)
def delete_income_profile(profile_id: int, db: Session = Depends(get_db)):
    try:
        IncomeProfileService(db).delete(profile_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/income/salary", response_model=Optional[SalaryOut])
def get_salary(db: Session = Depends(get_db)):
    return SalaryService(db).get_active()


@app.put("/api/income/salary", response_model=SalaryOut)
def upsert_salary(payload: SalaryIn, db: Session = Depends(get_db)):
    try:
        return SalaryService(db).upsert(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/income/salary/{setting_id}", status_code=204)
def delete_salary(setting_id: int, db: Session = Depends(get_db)):
    try:
        SalaryService(db).delete(setting_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/income/invoices", response_model=list[InvoiceOut])
def list_invoices(
    status: Optional[InvoiceStatus] = None, db: Session = Depends(get_db)
):
    return InvoiceService(db).list(status)


@app.post("/api/income/invoices", response_model=InvoiceOut, status_code=201)
def create_invoice(payload: InvoiceIn, db: Session = Depends(get_db)):
    try:
        return InvoiceService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/income/invoices/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int, payload: InvoicePatch, db: Session = Depends(get_db)
):
    try:
        return InvoiceService(db).update(invoice_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/income/invoices/{invoice_id}/void", response_model=InvoiceOut)
def void_invoice(invoice_id: int, db: Session = Depends(get_db)):
    try:
        return InvoiceService(db).void(invoice_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/income/invoices/{invoice_id}/mark-paid", response_model=PaidInvoiceOut
)
def mark_invoice_paid(
    invoice_id: int, payload: MarkPaidIn, db: Session = Depends(get_db)
):
    try:
        paid = InvoiceService(db).mark_paid(invoice_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return PaidInvoiceOut.model_validate(paid)


@app.delete("/api/income/invoices/{invoice_id}", status_code=204)
def delete_invoice(invoice_id: int, db: Session = Depends(get_db)):
    try:
        InvoiceService(db).delete(invoice_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/income/commission-rules", response_model=list[CommissionRuleOut])
def list_commission_rules(db: Session = Depends(get_db)):
    return CommissionRuleService(db).list()


@app.post(
    "/api/income/commission-rules", response_model=CommissionRuleOut, status_code=201
)
def create_commission_rule(payload: CommissionRuleIn, db: Session = Depends(get_db)):
    try:
        return CommissionRuleService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get(
    "/api/income/commission-rules/{rule_id}/versions",
    response_model=list[CommissionRuleVersionOut],
)
def list_commission_versions(rule_id: int, db: Session = Depends(get_db)):
    try:
        return CommissionRuleService(db).list_versions(rule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/income/commission-rules/{rule_id}/versions",
    response_model=CommissionRuleVersionOut,
    status_code=201,
)
def add_commission_version(
    rule_id: int, payload: CommissionRuleVersionIn, db: Session = Depends(get_db)
):
    try:
        return CommissionRuleService(db).add_version(rule_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, session_scope
from errors import ConflictError, NotFoundError
from importers import ImportService
from scheduler import SchedulerManager
from schemas import (
    AccountBulkOut,
    AccountIn,
    AccountOut,
    CategoryIn,
    CategoryOut,
    CurrencyIn,
    CurrencyOut,
    CurrencyUpdateIn,
    DryRunIn,
    DryRunOut,
    ExchangeIn,
    ExchangeOut,
    FixGapsOut,
    ImportIn,
    ImportOut,
    ImportParseOut,
    ParsedRowOut,
    RecalculateOut,
    RuleIn,
    RuleOut,
    ScheduleRuleIn,
    ScheduleRuleOut,
    TagIn,
    TagOut,
    TransactionIn,
    TransactionListIn,
    TransactionOut,
)
from services import (
    AccountService,
    CategoryService,
    CurrencyService,
    MaintenanceService,
    RuleService,
    ScheduleRuleService,
    TagService,
    TransactionService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        AccountService(session).ensure_default_accounts()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {"status": "ok"}


# accounts


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(include_deleted: bool = False, db: Session = Depends(get_db)):
    return AccountService(db).list(include_deleted=include_deleted)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        return AccountService(db).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/accounts", response_model=AccountOut)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/accounts/bulk", response_model=AccountBulkOut)
def create_accounts_bulk(payload: list[AccountIn], db: Session = Depends(get_db)):
    try:
        created, skipped = AccountService(db).create_bulk(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return AccountBulkOut(
        created=[AccountOut.model_validate(a) for a in created],
        skipped_count=skipped,
    )


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: int, payload: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}")
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


# currencies


@app.get("/api/currencies", response_model=list[CurrencyOut])
def list_currencies(
    ids: Optional[list[str]] = Query(None),
    include_disabled: bool = False,
    db: Session = Depends(get_db),
):
    return CurrencyService(db).list(ids=ids, include_disabled=include_disabled)


@app.post("/api/currencies", response_model=CurrencyOut)
def create_currency(payload: CurrencyIn, db: Session = Depends(get_db)):
    try:
        return CurrencyService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/currencies/{currency_id}", response_model=CurrencyOut)
def update_currency(
    currency_id: str, payload: CurrencyUpdateIn, db: Session = Depends(get_db)
):
    try:
        return CurrencyService(db).update(currency_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/currencies/{currency_id}")
def delete_currency(currency_id: str, db: Session = Depends(get_db)):
    try:
        CurrencyService(db).delete(currency_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/api/currencies/exchange", response_model=ExchangeOut)
def exchange(payload: ExchangeIn, db: Session = Depends(get_db)):
    try:
        amount = CurrencyService(db).exchange(
            payload.from_currency, payload.to_currency, payload.amount
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return ExchangeOut(amount=format(amount, "f"))


# tags and categories


@app.get("/api/tags", response_model=list[TagOut])
def list_tags(db: Session = Depends(get_db)):
    return TagService(db).list_all()


@app.post("/api/tags", response_model=TagOut)
def create_tag(payload: TagIn, db: Session = Depends(get_db)):
    try:
        return TagService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/tags/{tag_id}", response_model=TagOut)
def update_tag(tag_id: int, payload: TagIn, db: Session = Depends(get_db)):
    try:
        return TagService(db).update(tag_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/tags/{tag_id}")
def delete_tag(tag_id: int, db: Session = Depends(get_db)):
    try:
        TagService(db).delete(tag_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.post("/api/categories", response_model=CategoryOut)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def rename_category(category_id: int, payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).rename(category_id, payload.name)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


# transactions


@app.post("/api/transactions", response_model=TransactionOut)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions/bulk", response_model=list[TransactionOut])
def create_transactions_bulk(payload: list[TransactionIn], db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create_bulk(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions/search", response_model=list[TransactionOut])
def list_transactions(payload: TransactionListIn, db: Session = Depends(get_db)):
    return TransactionService(db).list(payload)


@app.get("/api/transactions/title-suggestions", response_model=list[str])
def title_suggestions(q: str = "", limit: int = Query(10, ge=1, le=50), db: Session = Depends(get_db)):
    return TransactionService(db).title_suggestions(q, limit=limit)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


# rules


@app.get("/api/rules", response_model=list[RuleOut])
def list_rules(include_deleted: bool = False, db: Session = Depends(get_db)):
    return RuleService(db).list_all(include_deleted=include_deleted)


@app.post("/api/rules", response_model=RuleOut)
def create_rule(payload: RuleIn, db: Session = Depends(get_db)):
    try:
        return RuleService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/rules/{rule_id}", response_model=RuleOut)
def update_rule(rule_id: int, payload: RuleIn, db: Session = Depends(get_db)):
    try:
        return RuleService(db).update(rule_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/rules/{rule_id}")
def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        RuleService(db).delete(rule_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/api/rules/dry-run", response_model=DryRunOut)
def dry_run_rule(payload: DryRunIn, db: Session = Depends(get_db)):
    try:
        return RuleService(db).dry_run(payload.rule, payload.transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# schedule rules


def schedule_rules(db: Session) -> ScheduleRuleService:
    return ScheduleRuleService(db, on_change=scheduler_manager.reinit)


@app.get("/api/schedule-rules", response_model=list[ScheduleRuleOut])
def list_schedule_rules(include_deleted: bool = False, db: Session = Depends(get_db)):
    return schedule_rules(db).list_all(include_deleted=include_deleted)


@app.post("/api/schedule-rules", response_model=ScheduleRuleOut)
def create_schedule_rule(payload: ScheduleRuleIn, db: Session = Depends(get_db)):
    try:
        return schedule_rules(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/schedule-rules/{rule_id}", response_model=ScheduleRuleOut)
def update_schedule_rule(
    rule_id: int, payload: ScheduleRuleIn, db: Session = Depends(get_db)
):
    try:
        return schedule_rules(db).update(rule_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/schedule-rules/{rule_id}")
def delete_schedule_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        schedule_rules(db).delete(rule_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/api/schedule-rules/dry-run", response_model=DryRunOut)
def dry_run_schedule_rule(payload: ScheduleRuleIn, db: Session = Depends(get_db)):
    try:
        return schedule_rules(db).dry_run(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/schedule-rules/{rule_id}/run", response_model=TransactionOut)
def run_schedule_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        return schedule_rules(db).run(rule_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# import


@app.post("/api/import", response_model=ImportOut)
def import_transactions(payload: ImportIn, db: Session = Depends(get_db)):
    try:
        return ImportService(db).import_transactions(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/import/parse", response_model=ImportParseOut)
def parse_import(payload: ImportIn, db: Session = Depends(get_db)):
    try:
        rows = ImportService(db).parse(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ImportParseOut(
        rows=[
            ParsedRowOut(
                title=row.title,
                notes=row.notes,
                transaction_date=row.transaction_date,
                parsing_error=row.parsing_error,
                duplicate_transaction_id=row.duplicate_transaction_id,
                transaction=row.request,
            )
            for row in rows
        ]
    )


# maintenance


@app.post("/api/maintenance/recalculate", response_model=RecalculateOut)
def recalculate_all(db: Session = Depends(get_db)):
    try:
        count = MaintenanceService(db).recalculate_all()
    except ValueError as exc:
        raise http_error(exc) from exc
    return RecalculateOut(transaction_count=count)


@app.post("/api/maintenance/fix-daily-gaps", response_model=FixGapsOut)
def fix_daily_gaps(db: Session = Depends(get_db)):
    return FixGapsOut(inserted_rows=MaintenanceService(db).fix_daily_gaps())


_static_dir = get_settings().static_files_directory
if _static_dir:
    app.mount("/", StaticFiles(directory=_static_dir, html=True), name="static")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().api_port)

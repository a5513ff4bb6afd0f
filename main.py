import logging
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import bearer_token, read_user_token
from database import get_session_factory
from errors import (
    AuthorizationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from models import TransactionType, User
from receipts import MAX_RECEIPT_BYTES, ReceiptScanError, ReceiptScanner
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BulkDeleteIn,
    TransactionIn,
    TransactionOut,
)
from services import AccountService, BudgetService, TransactionService, UserService


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")


def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def get_scanner() -> ReceiptScanner:
    return ReceiptScanner()


def current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    try:
        identity = read_user_token(bearer_token(authorization))
    except AuthorizationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return UserService(db).ensure_user(identity)


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    scheduler_manager = SchedulerManager()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, exc)


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return _error(403, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(ReceiptScanError)
async def receipt_scan_error_handler(request: Request, exc: ReceiptScanError):
    return _error(502, exc)


@app.exception_handler(TransientStoreError)
async def transient_store_handler(request: Request, exc: TransientStoreError):
    logger.warning(f"store_unavailable: path={request.url.path} error={exc}")
    return _error(503, exc)


def _account_out(account, transaction_count: int = 0) -> AccountOut:
    out = AccountOut.model_validate(account)
    out.transaction_count = transaction_count
    return out


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/accounts")
def list_accounts(
    user: User = Depends(current_user), db: Session = Depends(get_db)
):
    rows = AccountService(db, user.id).list_with_counts()
    return {"items": [_account_out(account, count) for account, count in rows]}


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).create(payload)
    return _account_out(account)


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    account, transactions = AccountService(db, user.id).get_with_transactions(
        account_id
    )
    return {
        "account": _account_out(account, len(transactions)),
        "transactions": [TransactionOut.model_validate(t) for t in transactions],
    }


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user.id).set_default(account_id)
    return _account_out(account)


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    txn_type: Optional[TransactionType] = Query(default=None, alias="type"),
    is_recurring: Optional[bool] = None,
    page: int = 1,
    limit: int = 50,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db, user.id).list(
        account_id=account_id,
        txn_type=txn_type,
        is_recurring=is_recurring,
        limit=limit + 1,
        offset=offset,
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [TransactionOut.model_validate(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).create(payload)
    return TransactionOut.model_validate(txn)


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    payload: BulkDeleteIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    deleted = TransactionService(db, user.id).bulk_delete(payload.transaction_ids)
    return {"success": True, "deleted": deleted}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).get(transaction_id)
    return TransactionOut.model_validate(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user.id).update(transaction_id, payload)
    return TransactionOut.model_validate(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    TransactionService(db, user.id).delete(transaction_id)
    return {"success": True}


@app.post("/api/receipts/scan")
async def scan_receipt(
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    scanner: ReceiptScanner = Depends(get_scanner),
):
    # One byte past the limit is enough for the scanner to reject an oversized upload.
    content = await file.read(MAX_RECEIPT_BYTES + 1)
    receipt = await run_in_threadpool(scanner.scan, content, file.content_type or "")
    logger.info(f"receipt_scan: user_id={user.id} size={len(content)}")
    return {
        "amount_cents": receipt.amount_cents,
        "date": receipt.date.isoformat() if receipt.date else None,
        "description": receipt.description,
        "merchant_name": receipt.merchant_name,
        "category": receipt.category,
    }


@app.get("/api/budget")
def get_budget(
    account_id: Optional[int] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    if account_id is not None:
        AccountService(db, user.id).get(account_id)
    return BudgetOut(**BudgetService(db, user.id).current(account_id))


@app.put("/api/budget")
def upsert_budget(
    payload: BudgetIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = BudgetService(db, user.id)
    service.upsert(payload)
    return BudgetOut(**service.current())


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

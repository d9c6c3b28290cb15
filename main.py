import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import Identity, get_current_user, get_identity
from config import get_settings
from database import get_db
from models import Category, Transaction, TransactionType, User
from money import cents_to_units
from periods import (
    DateRange,
    Timeframe,
    local_today,
    parse_ymd,
    range_from_query,
    resolve_range,
)
from schemas import CategoryIn, CategoryUpdate, TransactionIn, TransactionUpdate
from services import (
    AlreadyInactiveError,
    CategoryRef,
    CategoryService,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    SummaryService,
    TransactionService,
    UnifiedTransaction,
    UserService,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")

TRANSACTION_ROUTES = {
    "income": TransactionType.income,
    "expenses": TransactionType.expense,
}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages)})


@app.exception_handler(SQLAlchemyError)
async def store_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"store_error: method={request.method} path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def serialize_user(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "external_id": user.external_id,
        "email": user.email,
        "created_at": user.created_at.isoformat(),
    }


def serialize_category(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "icon": category.icon,
        "color": category.color,
        "user_id": category.user_id,
        "is_active": category.is_active,
        "created_at": category.created_at.isoformat(),
    }


def serialize_category_ref(ref: CategoryRef) -> dict[str, object]:
    return {
        "id": ref.id,
        "name": ref.name,
        "icon": ref.icon,
        "color": ref.color,
        "is_active": ref.is_active,
    }


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    category = None
    if txn.category is not None:
        category = serialize_category_ref(
            CategoryRef(
                id=txn.category.id,
                name=txn.category.name,
                icon=txn.category.icon,
                color=txn.category.color,
                is_active=txn.category.is_active,
            )
        )
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "type": txn.type.value,
        "amount": cents_to_units(txn.amount_cents),
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "category_id": txn.category_id,
        "category": category,
        "notes": txn.notes,
        "created_at": txn.created_at.isoformat(),
        "updated_at": txn.updated_at.isoformat(),
    }


def serialize_unified(item: UnifiedTransaction) -> dict[str, object]:
    return {
        "id": item.id,
        "type": item.type.value,
        "amount": cents_to_units(item.amount_cents),
        "amount_cents": item.amount_cents,
        "description": item.description,
        "date": item.date.isoformat(),
        "category": serialize_category_ref(item.category),
        "notes": item.notes,
    }


def transaction_type_from_path(kind: str) -> TransactionType:
    txn_type = TRANSACTION_ROUTES.get(kind)
    if txn_type is None:
        raise HTTPException(status_code=404, detail="Not found")
    return txn_type


def parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def range_from_request(request: Request) -> Optional[DateRange]:
    try:
        return range_from_query(
            request.query_params.get("from"), request.query_params.get("to")
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/users")
def provision_user(
    identity: Identity = Depends(get_identity), db: Session = Depends(get_db)
):
    user, created = UserService(db).provision(identity.subject, identity.email)
    return JSONResponse(
        status_code=201 if created else 200,
        content={"user": serialize_user(user), "created": created},
    )


@app.get("/users/me")
def current_user(user: User = Depends(get_current_user)):
    return {"user": serialize_user(user)}


@app.get("/categories")
def list_categories(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError as exc:
            raise HTTPException(
                status_code=400, detail="type must be 'income' or 'expense'"
            ) from exc
    include_inactive = parse_bool(request.query_params.get("includeInactive"))
    categories = CategoryService(db, user.id).list_all(
        type=txn_type, include_inactive=include_inactive
    )
    return {"categories": [serialize_category(c) for c in categories]}


@app.get("/categories/{category_id}")
def get_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).get(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"category": serialize_category(category)}


@app.post("/categories", status_code=201)
def create_category(
    data: CategoryIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).create(data)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"category": serialize_category(category)}


@app.patch("/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).update(category_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"category": serialize_category(category)}


@app.delete("/categories/{category_id}")
def deactivate_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = CategoryService(db, user.id).deactivate(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AlreadyInactiveError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    message = (
        "Category deactivated (it was in use)"
        if result.was_in_use
        else "Category deactivated"
    )
    return {
        "message": message,
        "category": serialize_category(result.category),
        "wasInUse": result.was_in_use,
    }


@app.post("/categories/{category_id}/reactivate")
def reactivate_category(
    category_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).reactivate(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"category": serialize_category(category)}


@app.get("/summary")
def summary(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    params = request.query_params
    if params.get("from") or params.get("to"):
        date_range = range_from_request(request)
    else:
        try:
            timeframe = Timeframe(params.get("timeframe") or Timeframe.month.value)
            reference = parse_ymd(params["date"]) if params.get("date") else local_today()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        date_range = resolve_range(timeframe, reference)

    result = SummaryService(db, user.id).summarize(date_range)
    return {
        "range": date_range.as_query() if date_range else None,
        "transactions": [serialize_unified(item) for item in result.transactions],
        "totalIncome": cents_to_units(result.total_income_cents),
        "totalExpenses": cents_to_units(result.total_expense_cents),
        "balance": cents_to_units(result.balance_cents),
        "expensesByCategory": {
            name: cents_to_units(cents)
            for name, cents in result.expenses_by_category.items()
        },
    }


@app.get("/{kind}")
def list_transactions(
    kind: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn_type = transaction_type_from_path(kind)
    date_range = range_from_request(request)
    items = TransactionService(db, user.id, txn_type).list(date_range)
    return [serialize_transaction(txn) for txn in items]


@app.get("/{kind}/{transaction_id}")
def get_transaction(
    kind: str,
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn_type = transaction_type_from_path(kind)
    try:
        txn = TransactionService(db, user.id, txn_type).get(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"transaction": serialize_transaction(txn)}


@app.post("/{kind}", status_code=201)
def create_transaction(
    kind: str,
    data: TransactionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn_type = transaction_type_from_path(kind)
    try:
        txn = TransactionService(db, user.id, txn_type).create(data)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"transaction": serialize_transaction(txn)}


@app.patch("/{kind}/{transaction_id}")
def update_transaction(
    kind: str,
    transaction_id: int,
    data: TransactionUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn_type = transaction_type_from_path(kind)
    try:
        txn = TransactionService(db, user.id, txn_type).update(transaction_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"transaction": serialize_transaction(txn)}


@app.delete("/{kind}/{transaction_id}")
def delete_transaction(
    kind: str,
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    txn_type = transaction_type_from_path(kind)
    try:
        TransactionService(db, user.id, txn_type).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Transaction deleted"}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

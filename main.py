import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from amounts import format_cents
from auth import generate_api_token, read_api_token
from config import get_settings
from database import get_db
from models import Category, SavingsFund, SavingsTransaction, Transaction, User
from schemas import (
    CategoryIn,
    CategoryUpdate,
    IdIn,
    LoginIn,
    RegisterIn,
    ReversalIn,
    SavingsFundIn,
    SavingsFundUpdate,
    SavingsTransactionIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AuthenticationError,
    CategoryService,
    ConflictError,
    InsufficientFundsError,
    LedgerAudit,
    LedgerError,
    NotFoundError,
    SavingsFundService,
    SavingsLedgerService,
    TransactionService,
    UserService,
)

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Savings Ledger API")
bearer_scheme = HTTPBearer(auto_error=False)


def envelope(
    status_code: int,
    *,
    message: Optional[str] = None,
    data: Any = None,
    errors: Optional[dict[str, list[str]]] = None,
) -> JSONResponse:
    body: dict[str, Any] = {"status": "success" if status_code < 400 else "error"}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    if errors is not None:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> int:
    if credentials is None:
        raise AuthenticationError("No autenticado")
    user_id = read_api_token(credentials.credentials)
    if user_id is None or UserService(db).get(user_id) is None:
        raise AuthenticationError("Token inválido o expirado")
    return user_id


VALIDATION_MESSAGES = {
    "missing": "El campo es obligatorio",
    "greater_than": "El valor debe ser mayor que {gt}",
    "string_pattern_mismatch": "El formato no es válido",
    "string_too_short": "Debe tener al menos {min_length} caracteres",
    "string_too_long": "No puede tener más de {max_length} caracteres",
    "string_type": "Debe ser un texto",
    "decimal_max_places": "No puede tener más de {decimal_places} decimales",
    "decimal_max_digits": "No puede tener más de {max_digits} dígitos",
    "decimal_parsing": "Monto inválido",
    "int_parsing": "Debe ser un número entero",
    "int_type": "Debe ser un número entero",
    "date_from_datetime_parsing": "La fecha debe tener el formato AAAA-MM-DD",
    "date_parsing": "La fecha debe tener el formato AAAA-MM-DD",
    "date_type": "La fecha debe tener el formato AAAA-MM-DD",
    "enum": "Debe ser uno de: {expected}",
    "extra_forbidden": "Campo no permitido",
    "json_invalid": "JSON inválido",
}


def _validation_message(error: dict[str, Any]) -> str:
    ctx = error.get("ctx") or {}
    if error.get("type") == "value_error" and "error" in ctx:
        # Raised by our own validators, already in Spanish.
        return str(ctx["error"])
    template = VALIDATION_MESSAGES.get(error.get("type", ""))
    if template is None:
        return "Valor inválido"
    try:
        return template.format(**ctx)
    except (KeyError, IndexError):
        return "Valor inválido"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        field = ".".join(loc) or "body"
        errors.setdefault(field, []).append(_validation_message(error))
    return envelope(422, message="Error de validación", errors=errors)


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    return envelope(401, message=str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return envelope(404, message=str(exc))


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return envelope(422, message=str(exc))


@app.exception_handler(InsufficientFundsError)
async def insufficient_funds_handler(request: Request, exc: InsufficientFundsError):
    return envelope(422, message=str(exc))


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return envelope(500, message=str(exc))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return envelope(500, message="Error interno del servidor")


def user_out(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "created_at": user.created_at,
    }


def category_out(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "created_at": category.created_at,
        "updated_at": category.updated_at,
    }


def fund_out(fund: SavingsFund) -> dict[str, Any]:
    return {
        "id": fund.id,
        "name": fund.name,
        "description": fund.description,
        "color": fund.color,
        "balance": format_cents(fund.balance_cents),
        "created_at": fund.created_at,
        "updated_at": fund.updated_at,
    }


def transaction_out(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "amount": format_cents(txn.amount_cents),
        "category": txn.category,
        "description": txn.description,
        "date": txn.date,
        "savings_fund_id": txn.savings_fund_id,
        "created_at": txn.created_at,
        "updated_at": txn.updated_at,
    }


def savings_transaction_out(entry: SavingsTransaction) -> dict[str, Any]:
    fund = entry.savings_fund
    return {
        "id": entry.id,
        "savings_fund_id": entry.savings_fund_id,
        "fund_name": fund.name if fund else None,
        "fund_color": fund.color if fund else None,
        "type": entry.type.value,
        "amount": format_cents(entry.amount_cents),
        "description": entry.description,
        "date": entry.date,
        "reversal_of_id": entry.reversal_of_id,
        "created_at": entry.created_at,
    }


def audit_out(audit: LedgerAudit) -> dict[str, Any]:
    return {
        "savings_fund_id": audit.fund_id,
        "balance": format_cents(audit.balance_cents),
        "ledger_balance": format_cents(audit.ledger_cents),
        "consistent": audit.consistent,
    }


@app.get("/health")
def health():
    return envelope(200, message="Backend funcionando correctamente")


@app.post("/register")
def register(data: RegisterIn, db: Session = Depends(get_db)):
    user = UserService(db).register(data)
    return envelope(
        201,
        message="Usuario registrado exitosamente",
        data={"user": user_out(user), "token": generate_api_token(user.id)},
    )


@app.post("/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(data.email, data.password)
    return envelope(
        200,
        message="Inicio de sesión exitoso",
        data={"user": user_out(user), "token": generate_api_token(user.id)},
    )


@app.get("/categories")
def list_categories(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    categories = CategoryService(db, user_id).list_all()
    return envelope(200, data=[category_out(c) for c in categories])


@app.post("/categories")
def create_category(
    data: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).create(data)
    return envelope(
        201, message="Categoría creada exitosamente", data=category_out(category)
    )


@app.post("/categories/update")
def update_category(
    data: CategoryUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user_id).update(data)
    return envelope(
        200, message="Categoría actualizada exitosamente", data=category_out(category)
    )


@app.post("/categories/delete")
def delete_category(
    data: IdIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    CategoryService(db, user_id).delete(data.id)
    return envelope(200, message="Categoría eliminada exitosamente")


@app.get("/savings-funds")
def list_savings_funds(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    funds = SavingsFundService(db, user_id).list_all()
    return envelope(200, data=[fund_out(f) for f in funds])


@app.post("/savings-funds")
def create_savings_fund(
    data: SavingsFundIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    fund = SavingsFundService(db, user_id).create(data)
    return envelope(
        201, message="Caja de ahorro creada exitosamente", data=fund_out(fund)
    )


@app.post("/savings-funds/update")
def update_savings_fund(
    data: SavingsFundUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    fund = SavingsFundService(db, user_id).update(data)
    return envelope(
        200, message="Fondo de ahorro actualizado exitosamente", data=fund_out(fund)
    )


@app.post("/savings-funds/delete")
def delete_savings_fund(
    data: IdIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    SavingsFundService(db, user_id).delete(data.id)
    return envelope(200, message="Fondo de ahorro eliminado exitosamente")


@app.post("/savings-funds/audit")
def audit_savings_fund(
    data: IdIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    audit = SavingsLedgerService(db, user_id).audit(data.id)
    return envelope(200, data=audit_out(audit))


@app.get("/transactions")
def list_transactions(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    transactions = TransactionService(db, user_id).list_all()
    return envelope(200, data=[transaction_out(t) for t in transactions])


@app.post("/transactions")
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).create(data)
    return envelope(
        201, message="Transacción creada exitosamente", data=transaction_out(txn)
    )


@app.post("/transactions/update")
def update_transaction(
    data: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, user_id).update(data)
    return envelope(
        200, message="Transacción actualizada exitosamente", data=transaction_out(txn)
    )


@app.post("/transactions/delete")
def delete_transaction(
    data: IdIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).delete(data.id)
    return envelope(200, message="Transacción eliminada exitosamente")


@app.get("/savings-transactions")
def list_savings_transactions(
    savings_fund_id: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    entries = SavingsLedgerService(db, user_id).list_all(savings_fund_id)
    return envelope(200, data=[savings_transaction_out(e) for e in entries])


@app.post("/savings-transactions")
def create_savings_transaction(
    data: SavingsTransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    entry, fund = SavingsLedgerService(db, user_id).apply(data)
    payload = savings_transaction_out(entry)
    payload["fund_balance"] = format_cents(fund.balance_cents)
    return envelope(
        201, message="Transacción de ahorro creada exitosamente", data=payload
    )


@app.post("/savings-transactions/reverse")
def reverse_savings_transaction(
    data: ReversalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    entry, fund = SavingsLedgerService(db, user_id).reverse(data)
    payload = savings_transaction_out(entry)
    payload["fund_balance"] = format_cents(fund.balance_cents)
    return envelope(
        201, message="Transacción de ahorro revertida exitosamente", data=payload
    )

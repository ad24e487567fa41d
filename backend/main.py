import math
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.auth import get_current_user, get_engine, resolve_external_identity
from backend.config import get_allowed_origins
from backend.credentials import hash_password, issue_token, verify_password
from backend.database import create_db_engine, init_db
from backend.errors import ApiError, AuthError, AuthFailure, ConflictError, ValidationFailed
from backend.expense_summary import summarize
from backend.logging_setup import configure_logging
from backend.repositories import (
    CategoryRepository,
    CurrencyRepository,
    ExpenseRepository,
    UserRepository,
)
from backend.schemas import (
    CategoryCreatePayload,
    CategoryRef,
    CategoryResponse,
    CategorySummaryResponse,
    CategoryUpdatePayload,
    CurrencyCreatePayload,
    CurrencyRef,
    CurrencyResponse,
    CurrencyUpdatePayload,
    ExpenseCreatePayload,
    ExpenseResponse,
    ExpenseSummaryResponse,
    ExpenseUpdatePayload,
    ExternalIdentityPayload,
    MAX_ID,
    PaginationResponse,
    SigninPayload,
    SignupPayload,
    UserResponse,
    format_validation_errors,
    parse_date_range,
)

configure_logging()
logger = structlog.get_logger()

app = FastAPI(title="Expense Tracker API")
app.state.engine = create_db_engine()

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def init_database() -> None:
    init_db(app.state.engine)
    logger.info("Database ready", dialect=app.state.engine.dialect.name)


def envelope(message: str | None = None, **data: Any) -> dict:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data:
        body["data"] = data
    return body


def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    content = {"success": False, "message": message}
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    errors = exc.errors if isinstance(exc, ValidationFailed) else None
    data = None
    if isinstance(exc, ConflictError) and exc.count is not None:
        data = {"count": exc.count}
    response = error_response(exc.status_code, exc.message, errors=errors, data=data)
    if isinstance(exc, AuthError):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return error_response(
        400, "Validation failed", errors=format_validation_errors(exc.errors())
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return error_response(404, "Route not found")
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return error_response(500, "Internal server error")


def category_response(row: dict) -> CategoryResponse:
    return CategoryResponse(**row)


def currency_response(row: dict) -> CurrencyResponse:
    return CurrencyResponse(**row)


def expense_response(row: dict) -> ExpenseResponse:
    return ExpenseResponse(
        **row,
        category=CategoryRef(
            id=row["category_id"], name=row["category_name"], color=row["category_color"]
        ),
        currency=CurrencyRef(
            id=row["currency_id"],
            name=row["currency_name"],
            usd_exchange_rate=row["currency_usd_exchange_rate"],
        ),
    )


@app.get("/")
def root() -> dict:
    return {"message": "Welcome to My Expense API"}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


# Auth


@app.post("/api/auth/signup", status_code=201)
def signup(payload: SignupPayload, engine: Engine = Depends(get_engine)) -> dict:
    password_hash = hash_password(payload.password)
    with engine.begin() as conn:
        user = UserRepository(conn).create(
            payload.email, password_hash=password_hash, name=payload.name
        )
    logger.info("User registered", user_id=user["id"])
    return envelope(
        "User registered successfully",
        user=UserResponse(**user),
        token=issue_token(user["id"]),
    )


@app.post("/api/auth/signin")
def signin(payload: SigninPayload, engine: Engine = Depends(get_engine)) -> dict:
    with engine.begin() as conn:
        row = UserRepository(conn).get_credentials(payload.email)

    if not row or not verify_password(payload.password, row["password_hash"]):
        raise AuthError(AuthFailure.INVALID, "Invalid email or password")

    logger.info("User signed in", user_id=row["id"])
    return envelope(
        "Signed in successfully",
        user=UserResponse(**row),
        token=issue_token(row["id"]),
    )


@app.post("/api/auth/google")
def google_callback(
    payload: ExternalIdentityPayload, engine: Engine = Depends(get_engine)
) -> dict:
    missing = payload.missing_fields()
    if missing:
        raise ValidationFailed(
            [{"field": field, "message": f"{field} is required"} for field in missing],
            message="Missing required fields: email, providerAccountId, provider",
        )
    with engine.begin() as conn:
        user = resolve_external_identity(conn, payload)
    return envelope(
        "Google authentication successful",
        user=UserResponse(**user),
        token=issue_token(user["id"]),
    )


@app.get("/api/auth/profile")
def profile(user: dict = Depends(get_current_user)) -> dict:
    return envelope(user=UserResponse(**user))


# Categories


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryCreatePayload,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = CategoryRepository(conn).create(user["id"], payload.model_dump())
    return envelope("Category created successfully", category=category_response(row))


@app.get("/api/categories")
def list_categories(
    user: dict = Depends(get_current_user), engine: Engine = Depends(get_engine)
) -> dict:
    with engine.begin() as conn:
        rows = CategoryRepository(conn).list_by_owner(user["id"])
    return envelope(categories=[category_response(row) for row in rows])


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = CategoryRepository(conn).get(user["id"], category_id)
    return envelope(category=category_response(row))


@app.put("/api/categories/{category_id}")
def update_category(
    payload: CategoryUpdatePayload,
    category_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = CategoryRepository(conn).update(
            user["id"], category_id, payload.model_dump(exclude_unset=True)
        )
    return envelope("Category updated successfully", category=category_response(row))


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        CategoryRepository(conn).delete(user["id"], category_id)
    return envelope("Category deleted successfully")


# Currencies


@app.post("/api/currencies", status_code=201)
def create_currency(
    payload: CurrencyCreatePayload,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = CurrencyRepository(conn).create(user["id"], payload.model_dump())
    return envelope("Currency created successfully", currency=currency_response(row))


@app.get("/api/currencies")
def list_currencies(
    user: dict = Depends(get_current_user), engine: Engine = Depends(get_engine)
) -> dict:
    with engine.begin() as conn:
        rows = CurrencyRepository(conn).list_by_owner(user["id"])
    return envelope(currencies=[currency_response(row) for row in rows])


@app.get("/api/currencies/{currency_id}")
def get_currency(
    currency_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = CurrencyRepository(conn).get(user["id"], currency_id)
    return envelope(currency=currency_response(row))


@app.put("/api/currencies/{currency_id}")
def update_currency(
    payload: CurrencyUpdatePayload,
    currency_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = CurrencyRepository(conn).update(
            user["id"], currency_id, payload.model_dump(exclude_unset=True)
        )
    return envelope("Currency updated successfully", currency=currency_response(row))


@app.delete("/api/currencies/{currency_id}")
def delete_currency(
    currency_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        CurrencyRepository(conn).delete(user["id"], currency_id)
    return envelope("Currency deleted successfully")


# Expenses


@app.get("/api/expenses/summary")
def expense_summary(
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    start, end = parse_date_range(start_date, end_date)
    with engine.begin() as conn:
        result = summarize(conn, user["id"], start, end)
    summary = ExpenseSummaryResponse(
        total_amount=result.total_amount,
        total_count=result.total_count,
        by_category=[
            CategorySummaryResponse(
                category=CategoryRef(**entry.category) if entry.category else None,
                total_amount=entry.total_amount,
                count=entry.count,
            )
            for entry in result.per_category
        ],
    )
    return envelope(summary=summary)


@app.post("/api/expenses", status_code=201)
def create_expense(
    payload: ExpenseCreatePayload,
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = ExpenseRepository(conn).create(user["id"], payload.model_dump())
    return envelope("Expense created successfully", expense=expense_response(row))


@app.get("/api/expenses")
def list_expenses(
    category_id: int | None = Query(None, alias="categoryId", ge=1, le=MAX_ID),
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    page: int = Query(1, ge=1, le=MAX_ID),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    start, end = parse_date_range(start_date, end_date)
    with engine.begin() as conn:
        rows, total = ExpenseRepository(conn).list_by_owner(
            user["id"],
            category_id=category_id,
            start_date=start,
            end_date=end,
            page=page,
            limit=limit,
        )
    return envelope(
        expenses=[expense_response(row) for row in rows],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit),
        ),
    )


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = ExpenseRepository(conn).get(user["id"], expense_id)
    return envelope(expense=expense_response(row))


@app.put("/api/expenses/{expense_id}")
def update_expense(
    payload: ExpenseUpdatePayload,
    expense_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        row = ExpenseRepository(conn).update(
            user["id"], expense_id, payload.model_dump(exclude_unset=True)
        )
    return envelope("Expense updated successfully", expense=expense_response(row))


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int = Path(..., ge=1, le=MAX_ID),
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> dict:
    with engine.begin() as conn:
        ExpenseRepository(conn).delete(user["id"], expense_id)
    return envelope("Expense deleted successfully")

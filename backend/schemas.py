from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Annotated, Any, Iterable

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ConfigDict, PlainSerializer, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from backend.errors import ValidationFailed

MAX_EXPENSE_AMOUNT = Decimal("99999999.99")
MAX_EXCHANGE_RATE = Decimal("999999999999.999999")
# Largest id, page or reference number accepted from a client.
MAX_ID = 2**31 - 1
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
FRACTION_PATTERN = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)", re.IGNORECASE)
DATE_FORMAT_MESSAGE = "Date must be an ISO-8601 datetime or YYYY-MM-DD"

# Decimals go out as JSON numbers rather than strings.
JsonDecimal = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def format_validation_errors(errors: Iterable[dict[str, Any]]) -> list[dict[str, str]]:
    """Flatten pydantic errors into ordered ``{field, message}`` pairs."""
    formatted = []
    for error in errors:
        parts = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(parts) or "body"
        error_type = error.get("type")
        if error_type == "value_error" and error.get("ctx", {}).get("error") is not None:
            message = str(error["ctx"]["error"])
        elif error_type == "missing":
            message = f"{field} is required" if parts else "Request body is required"
        else:
            message = error.get("msg", "Invalid value")
        formatted.append({"field": field, "message": message})
    return formatted


def parse_date_value(value: str, *, end_of_day: bool = False) -> datetime:
    """Parse ``YYYY-MM-DD`` or an offset-aware ISO-8601 datetime into naive UTC."""
    value = value.strip()
    if DATE_ONLY_PATTERN.match(value):
        try:
            parsed_date = date.fromisoformat(value)
        except ValueError as exc:
            raise ValueError(DATE_FORMAT_MESSAGE) from exc
        return datetime.combine(parsed_date, time.max if end_of_day else time.min)

    if "T" not in value.upper():
        raise ValueError(DATE_FORMAT_MESSAGE)
    # fromisoformat on 3.10 only takes 3 or 6 fractional digits.
    value = FRACTION_PATTERN.sub(
        lambda match: f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}", value
    )
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError as exc:
        raise ValueError(DATE_FORMAT_MESSAGE) from exc
    if parsed.tzinfo is None:
        raise ValueError(DATE_FORMAT_MESSAGE)
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def parse_date_range(
    start_date: str | None, end_date: str | None
) -> tuple[datetime | None, datetime | None]:
    errors = []
    start = end = None
    if start_date:
        try:
            start = parse_date_value(start_date)
        except ValueError as exc:
            errors.append({"field": "startDate", "message": str(exc)})
    if end_date:
        try:
            end = parse_date_value(end_date, end_of_day=True)
        except ValueError as exc:
            errors.append({"field": "endDate", "message": str(exc)})
    if start and end and start > end:
        errors.append({"field": "startDate", "message": "Start date must be on or before end date"})
    if errors:
        raise ValidationFailed(errors)
    return start, end


def _reject_null(value: Any, label: str) -> Any:
    if value is None:
        raise ValueError(f"{label} cannot be null")
    return value


def _check_length(value: str, label: str, maximum: int, minimum: int = 0) -> str:
    if len(value) < minimum:
        raise ValueError(f"{label} is required")
    if len(value) > maximum:
        raise ValueError(f"{label} must be less than {maximum} characters")
    return value


def _normalize_email(value: str) -> str:
    value = value.strip()
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValueError("Invalid email format") from exc
    return value.lower()


def _check_color(value: str | None) -> str | None:
    if value is not None and not HEX_COLOR_PATTERN.match(value):
        raise ValueError("Color must be a valid hex color (e.g., #FF5733)")
    return value


def _require_number(value: Any, label: str) -> Any:
    """Reject strings and booleans that lax parsing would turn into numbers."""
    if value is None:
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValueError(f"{label} must be a number")
    return value


def _check_places(value: Decimal, places: int, message: str) -> None:
    if value != value.quantize(Decimal(1).scaleb(-places)):
        raise ValueError(message)


def _check_amount(value: Decimal | None) -> Decimal | None:
    if value is None:
        raise ValueError("Amount cannot be null")
    if value <= 0:
        raise ValueError("Amount must be positive")
    if value > MAX_EXPENSE_AMOUNT:
        raise ValueError("Amount is too large")
    _check_places(value, 2, "Amount must have at most 2 decimal places")
    return value


def _check_rate(value: Decimal | None) -> Decimal:
    _reject_null(value, "USD exchange rate")
    if value <= 0:
        raise ValueError("USD exchange rate must be positive")
    if value > MAX_EXCHANGE_RATE:
        raise ValueError("USD exchange rate is too large")
    _check_places(value, 6, "USD exchange rate must have at most 6 decimal places")
    return value


NUMBER_LABELS = {"amount": "Amount", "category_id": "Category ID", "currency_id": "Currency ID"}


def _check_reference(value: int | None, label: str) -> int:
    _reject_null(value, label)
    if value <= 0:
        raise ValueError(f"{label} must be a positive integer")
    if value > MAX_ID:
        raise ValueError(f"{label} is too large")
    return value


def _coerce_date(value: Any) -> datetime:
    if value is None:
        raise ValueError("Date cannot be null")
    if not isinstance(value, str):
        raise ValueError(DATE_FORMAT_MESSAGE)
    return parse_date_value(value)


# Requests


class SignupPayload(ApiModel):
    email: str
    password: str
    name: str | None = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters")
        if len(value) > 100:
            raise ValueError("Password must be less than 100 characters")
        return value

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str | None) -> str:
        _reject_null(value, "Name")
        return _check_length(value.strip(), "Name", 100, minimum=1)


class SigninPayload(ApiModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value


class ExternalIdentityPayload(ApiModel):
    email: str | None = None
    name: str | None = None
    provider_account_id: str | None = None
    provider: str | None = None
    image: str | None = None

    def missing_fields(self) -> list[str]:
        required = (
            ("email", self.email),
            ("providerAccountId", self.provider_account_id),
            ("provider", self.provider),
        )
        return [field for field, value in required if not (value and value.strip())]


class CategoryCreatePayload(ApiModel):
    name: str
    description: str | None = None
    color: str | None = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        return _check_length(value.strip(), "Name", 100, minimum=1)

    @field_validator("description")
    @classmethod
    def check_description(cls, value: str | None) -> str:
        _reject_null(value, "Description")
        return _check_length(value, "Description", 500)

    @field_validator("color")
    @classmethod
    def check_color(cls, value: str | None) -> str:
        _reject_null(value, "Color")
        return _check_color(value)


class CategoryUpdatePayload(ApiModel):
    name: str | None = None
    description: str | None = None
    color: str | None = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str | None) -> str:
        _reject_null(value, "Name")
        return _check_length(value.strip(), "Name", 100, minimum=1)

    @field_validator("description")
    @classmethod
    def check_description(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_length(value, "Description", 500)

    @field_validator("color")
    @classmethod
    def check_color(cls, value: str | None) -> str | None:
        return _check_color(value)


class CurrencyCreatePayload(ApiModel):
    name: str
    usd_exchange_rate: Decimal

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        return _check_length(value.strip(), "Name", 50, minimum=1)

    @field_validator("usd_exchange_rate", mode="before")
    @classmethod
    def require_number(cls, value: Any) -> Any:
        return _require_number(value, "USD exchange rate")

    @field_validator("usd_exchange_rate")
    @classmethod
    def check_rate(cls, value: Decimal) -> Decimal:
        return _check_rate(value)


class CurrencyUpdatePayload(ApiModel):
    name: str | None = None
    usd_exchange_rate: Decimal | None = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str | None) -> str:
        _reject_null(value, "Name")
        return _check_length(value.strip(), "Name", 50, minimum=1)

    @field_validator("usd_exchange_rate", mode="before")
    @classmethod
    def require_number(cls, value: Any) -> Any:
        return _require_number(value, "USD exchange rate")

    @field_validator("usd_exchange_rate")
    @classmethod
    def check_rate(cls, value: Decimal | None) -> Decimal:
        return _check_rate(value)


class ExpenseCreatePayload(ApiModel):
    amount: Decimal
    description: str | None = None
    date: datetime | None = None
    category_id: int
    currency_id: int

    @field_validator("amount", "category_id", "currency_id", mode="before")
    @classmethod
    def require_number(cls, value: Any, info: ValidationInfo) -> Any:
        return _require_number(value, NUMBER_LABELS[info.field_name])

    @field_validator("amount")
    @classmethod
    def check_amount(cls, value: Decimal) -> Decimal:
        return _check_amount(value)

    @field_validator("description")
    @classmethod
    def check_description(cls, value: str | None) -> str:
        _reject_null(value, "Description")
        return _check_length(value, "Description", 500)

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, value: Any) -> datetime:
        return _coerce_date(value)

    @field_validator("category_id")
    @classmethod
    def check_category(cls, value: int) -> int:
        return _check_reference(value, "Category ID")

    @field_validator("currency_id")
    @classmethod
    def check_currency(cls, value: int) -> int:
        return _check_reference(value, "Currency ID")


class ExpenseUpdatePayload(ApiModel):
    amount: Decimal | None = None
    description: str | None = None
    date: datetime | None = None
    category_id: int | None = None
    currency_id: int | None = None

    @field_validator("amount", "category_id", "currency_id", mode="before")
    @classmethod
    def require_number(cls, value: Any, info: ValidationInfo) -> Any:
        return _require_number(value, NUMBER_LABELS[info.field_name])

    @field_validator("amount")
    @classmethod
    def check_amount(cls, value: Decimal | None) -> Decimal:
        return _check_amount(value)

    @field_validator("description")
    @classmethod
    def check_description(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_length(value, "Description", 500)

    @field_validator("date", mode="before")
    @classmethod
    def check_date(cls, value: Any) -> datetime:
        return _coerce_date(value)

    @field_validator("category_id")
    @classmethod
    def check_category(cls, value: int | None) -> int:
        return _check_reference(value, "Category ID")

    @field_validator("currency_id")
    @classmethod
    def check_currency(cls, value: int | None) -> int:
        return _check_reference(value, "Currency ID")


# Responses


class UserResponse(ApiModel):
    id: int
    email: str
    name: str | None = None
    provider: str | None = None
    provider_account_id: str | None = None
    email_verified: bool = False
    image: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CategoryRef(ApiModel):
    id: int
    name: str
    color: str | None = None


class CategoryResponse(ApiModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    color: str | None = None
    expense_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CurrencyRef(ApiModel):
    id: int
    name: str
    usd_exchange_rate: JsonDecimal


class CurrencyResponse(ApiModel):
    id: int
    user_id: int
    name: str
    usd_exchange_rate: JsonDecimal
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExpenseResponse(ApiModel):
    id: int
    user_id: int
    amount: JsonDecimal
    description: str | None = None
    date: datetime
    category_id: int
    currency_id: int
    category: CategoryRef
    currency: CurrencyRef
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaginationResponse(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int


class CategorySummaryResponse(ApiModel):
    category: CategoryRef | None = None
    total_amount: JsonDecimal
    count: int


class ExpenseSummaryResponse(ApiModel):
    total_amount: JsonDecimal
    total_count: int
    by_category: list[CategorySummaryResponse]

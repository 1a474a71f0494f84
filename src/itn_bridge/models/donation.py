from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


MAX_INTEGER_DIGITS = 18


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _finite_decimal(text: str) -> Decimal | None:
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    if not parsed.is_finite() or parsed.adjusted() >= MAX_INTEGER_DIGITS:
        return None
    return parsed


class DonationNotification(BaseModel):
    """A decoded ITN, with every field typed and defaulted once."""

    model_config = ConfigDict(frozen=True)

    email: str
    biome_name: str = ""
    amount_gross: Decimal = Field(default=Decimal("0"), ge=0)
    gateway_token: str = ""
    friend_name: str = ""
    friend_email: str = ""
    billing_date: date = Field(default_factory=_today)
    points_earned: int = Field(default=0, ge=0)

    transaction_id: str = ""
    payment_status: str = ""

    @field_validator("email")
    @classmethod
    def check_email_shape(cls, value: str) -> str:
        # Stored as sent; other CMS writers key users on the exact string.
        local, at, domain = value.rpartition("@")
        if not at or not local or not domain or any(ch.isspace() for ch in value):
            raise ValueError("email must look like local@domain")
        return value

    @field_validator("amount_gross", mode="before")
    @classmethod
    def parse_amount(cls, value: Any) -> Any:
        if value is None or value == "":
            return Decimal("0")
        if isinstance(value, str):
            parsed = _finite_decimal(value)
            return Decimal("0") if parsed is None else parsed
        return value

    @field_validator("points_earned", mode="before")
    @classmethod
    def parse_points(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        if isinstance(value, str):
            parsed = _finite_decimal(value)
            return 0 if parsed is None else int(parsed)
        return value

    @field_validator("billing_date", mode="before")
    @classmethod
    def parse_billing_date(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not value:
            return _today()
        try:
            return datetime.fromisoformat(str(value)).date()
        except ValueError:
            return _today()

    @property
    def has_gift(self) -> bool:
        return bool(self.friend_name and self.friend_email)

    @property
    def is_complete_payment(self) -> bool:
        # Absent status is treated as complete; older forms never sent it.
        return not self.payment_status or self.payment_status.upper() == "COMPLETE"


class Delta(BaseModel):
    amount: Decimal = Decimal("0")
    points: int = 0


class PipelineState(str, Enum):
    RECEIVED = "Received"
    NORMALIZED = "Normalized"
    USER_RESOLVED = "UserResolved"
    PROFILE_AGGREGATED = "ProfileAggregated"
    BIOME_AGGREGATED = "BiomeAggregated"
    DONATION_RECORDED = "DonationRecorded"
    GIFT_RECORDED = "GiftRecorded"
    GRANTS_EVALUATED = "GrantsEvaluated"
    COMPLETED = "Completed"
    DUPLICATE = "Duplicate"
    IGNORED = "Ignored"
    FAILED = "Failed"


class PipelineResult(BaseModel):
    state: PipelineState = PipelineState.RECEIVED
    transaction_id: str | None = None
    user_id: int | None = None
    profile_id: int | None = None
    biome_id: int | None = None
    donation_id: int | None = None
    gift_donation_id: int | None = None
    amount_donated: Decimal | None = None
    total_points: int | None = None
    biome_total_donated: Decimal | None = None
    granted_cards: list[int] = Field(default_factory=list)

import json
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Gateway field name -> DonationNotification attribute.
DEFAULT_FIELD_MAP: dict[str, str] = {
    "email_address": "email",
    "custom_str3": "biome_name",
    "amount_gross": "amount_gross",
    "token": "gateway_token",
    "custom_str1": "friend_name",
    "custom_str2": "friend_email",
    "billing_date": "billing_date",
    "custom_int1": "points_earned",
    "pf_payment_id": "transaction_id",
    "payment_status": "payment_status",
}

BiomePolicy = Literal["create", "fail"]


class Settings(BaseSettings):

    STRAPI_URL: str
    STRAPI_API_TOKEN: str

    PAYFAST_MERCHANT_ID: str = ""
    PAYFAST_PASSPHRASE: str = ""
    PAYFAST_API_URL: str = "https://api.payfast.co.za"
    PAYFAST_SANDBOX: bool = False

    PORT: int = 3001
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = []

    BIOME_POLICY: BiomePolicy = "create"
    ITN_FIELD_MAP: dict[str, str] = DEFAULT_FIELD_MAP

    BACKEND_TIMEOUT_SECONDS: float = 10.0
    AGGREGATION_MAX_ATTEMPTS: int = 3

    IDEMPOTENCY_TABLE_NAME: str | None = None
    AWS_REGION: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("ITN_FIELD_MAP", mode="before")
    @classmethod
    def parse_field_map(cls, value):
        if isinstance(value, str):
            value = json.loads(value)
        return value

    @property
    def cors_origins(self) -> list[str]:
        return self.CORS_ORIGINS or [self.STRAPI_URL]


@lru_cache()
def get_settings() -> Settings:
    return Settings()

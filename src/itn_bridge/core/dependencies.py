from functools import lru_cache

import boto3
import httpx

from itn_bridge.core.config import get_settings
from itn_bridge.data_access.dynamodb import IdempotencyLedger
from itn_bridge.data_access.strapi import StrapiClient
from itn_bridge.services.aggregation import AggregationEngine
from itn_bridge.services.donation_recorder import DonationRecorder
from itn_bridge.services.donation_service import DonationService
from itn_bridge.services.entity_resolver import EntityResolver
from itn_bridge.services.loyalty_service import LoyaltyService
from itn_bridge.services.subscription_service import SubscriptionService


@lru_cache()
def get_strapi_client() -> StrapiClient:
    settings = get_settings()
    return StrapiClient(
        base_url=settings.STRAPI_URL,
        api_token=settings.STRAPI_API_TOKEN,
        timeout=settings.BACKEND_TIMEOUT_SECONDS
    )


@lru_cache()
def get_idempotency_ledger() -> IdempotencyLedger | None:
    settings = get_settings()
    if not settings.IDEMPOTENCY_TABLE_NAME:
        return None

    session = boto3.Session(region_name=settings.AWS_REGION)
    table = session.resource('dynamodb').Table(settings.IDEMPOTENCY_TABLE_NAME)
    return IdempotencyLedger(table=table)


@lru_cache()
def get_donation_service() -> DonationService:
    settings = get_settings()
    backend = get_strapi_client()
    return DonationService(
        resolver=EntityResolver(backend, biome_policy=settings.BIOME_POLICY),
        aggregation=AggregationEngine(backend, max_attempts=settings.AGGREGATION_MAX_ATTEMPTS),
        recorder=DonationRecorder(backend),
        loyalty=LoyaltyService(backend),
        ledger=get_idempotency_ledger(),
        field_map=settings.ITN_FIELD_MAP
    )


@lru_cache()
def get_subscription_service() -> SubscriptionService:
    settings = get_settings()
    client = httpx.Client(
        base_url=settings.PAYFAST_API_URL.rstrip("/"),
        timeout=settings.BACKEND_TIMEOUT_SECONDS
    )
    return SubscriptionService(
        client=client,
        merchant_id=settings.PAYFAST_MERCHANT_ID,
        passphrase=settings.PAYFAST_PASSPHRASE,
        sandbox=settings.PAYFAST_SANDBOX
    )

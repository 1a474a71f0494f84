import logging
from typing import Mapping

from botocore.exceptions import BotoCoreError, ClientError

from itn_bridge.core.config import DEFAULT_FIELD_MAP
from itn_bridge.core.errors import ErrorKind, PipelineError
from itn_bridge.core.logging_config import transaction_context
from itn_bridge.data_access.dynamodb import BIOME_STAGE, COMPLETED_STAGE, PROFILE_STAGE, IdempotencyLedger
from itn_bridge.models.donation import Delta, DonationNotification, PipelineResult, PipelineState
from itn_bridge.services.aggregation import AggregationEngine, as_decimal
from itn_bridge.services.donation_recorder import DonationRecorder
from itn_bridge.services.entity_resolver import EntityResolver
from itn_bridge.services.loyalty_service import LoyaltyService
from itn_bridge.services.payload_normalizer import normalize_payload

logger = logging.getLogger(__name__)


class DonationService:
    """
    Runs one ITN through the pipeline:

        normalize -> user -> profile (+totals) -> biome (+totals)
        -> donation -> gift (optional) -> loyalty grants

    Steps run strictly in order and a failure stops the run where it is.
    Nothing already written is rolled back; the gateway redelivers the
    notification and the run starts over. When a donation is already recorded
    under the notification's transaction id, the redelivery skips the totals
    and the donation and only finishes the gift and the grants. The optional
    ledger lets a redelivery skip totals it already applied, and ends a
    redelivery of a completed run before any CMS call.
    """

    def __init__(
        self,
        resolver: EntityResolver,
        aggregation: AggregationEngine,
        recorder: DonationRecorder,
        loyalty: LoyaltyService,
        ledger: IdempotencyLedger | None = None,
        field_map: Mapping[str, str] = DEFAULT_FIELD_MAP
    ):
        self.resolver = resolver
        self.aggregation = aggregation
        self.recorder = recorder
        self.loyalty = loyalty
        self.ledger = ledger
        self.field_map = field_map

    def process_notification(self, raw: Mapping[str, str]) -> PipelineResult:
        result = PipelineResult()
        try:
            notification = normalize_payload(raw, self.field_map)
            self._advance(result, PipelineState.NORMALIZED)
            result.transaction_id = notification.transaction_id or None
            with transaction_context(result.transaction_id):
                self._dispatch(notification, result)
            return result

        except PipelineError as e:
            result.state = PipelineState.FAILED
            logger.error(
                f"Notification {result.transaction_id} failed with {e.kind.value}: {e.message}",
                extra={"itn": {"detail": e.detail}} if e.detail else None,
            )
            raise

    def _dispatch(self, notification: DonationNotification, result: PipelineResult) -> None:
        if not notification.is_complete_payment:
            logger.info(
                f"Ignoring notification {notification.transaction_id} "
                f"with payment status {notification.payment_status}"
            )
            self._advance(result, PipelineState.IGNORED)
            return

        if not notification.biome_name:
            raise PipelineError(ErrorKind.UNKNOWN_BIOME, "Notification names no biome")

        key = notification.transaction_id
        if not key:
            logger.warning(f"Notification for {notification.email} has no transaction id; "
                           f"redelivery cannot be detected.")
            self._run(notification, result)
            return

        if self._stage_done(key, COMPLETED_STAGE):
            logger.info(f"Skipped duplicate processing for transaction {key}.")
            self._advance(result, PipelineState.DUPLICATE)
            return

        donation = self.recorder.find_by_transaction(key)
        if donation is None:
            self._run(notification, result)
        else:
            self._resume(notification, donation, result)

    def _run(self, notification: DonationNotification, result: PipelineResult) -> None:
        key = notification.transaction_id
        delta = Delta(amount=notification.amount_gross, points=notification.points_earned)

        user, existed = self.resolver.resolve_user(notification.email)
        result.user_id = user["id"]
        logger.info(f"Resolved user {user['id']} for {notification.email} (existing: {existed})")
        self._advance(result, PipelineState.USER_RESOLVED)

        profile, _ = self.resolver.resolve_profile(user["id"])
        result.profile_id = profile["id"]
        if self._stage_done(key, PROFILE_STAGE):
            logger.info(f"Skipping profile totals for {key}, already applied.")
        else:
            profile = self.aggregation.accumulate_profile(profile, delta, notification)
            self._mark_stage(key, PROFILE_STAGE, profile_id=profile["id"])
        self._set_profile_totals(result, profile)
        self._advance(result, PipelineState.PROFILE_AGGREGATED)

        biome, _ = self.resolver.resolve_biome(notification.biome_name)
        result.biome_id = biome["id"]
        if self._stage_done(key, BIOME_STAGE):
            logger.info(f"Skipping biome totals for {key}, already applied.")
        else:
            biome = self.aggregation.accumulate_biome(biome, notification.amount_gross, user["id"])
            self._mark_stage(key, BIOME_STAGE, biome_id=biome["id"])
        result.biome_total_donated = as_decimal(biome.get("totalDonated"))
        self._advance(result, PipelineState.BIOME_AGGREGATED)

        result.donation_id = self.recorder.record_donation(
            profile_id=profile["id"],
            user_id=user["id"],
            biome_id=biome["id"],
            amount=notification.amount_gross,
            donation_date=notification.billing_date,
            transaction_id=key,
        )
        self._advance(result, PipelineState.DONATION_RECORDED)

        if notification.has_gift:
            self._record_gift(notification, result)

        self._finish(notification, result)

    def _resume(self, notification: DonationNotification, donation: dict, result: PipelineResult) -> None:
        """
        The donation exists, so the totals behind it were already applied.
        Only the gift and the grants may be missing.
        """
        key = notification.transaction_id
        logger.info(f"Donation {donation['id']} already recorded for transaction {key}, resuming.")
        result.donation_id = donation["id"]

        user, _ = self.resolver.resolve_user(notification.email)
        result.user_id = user["id"]
        profile, _ = self.resolver.resolve_profile(user["id"])
        result.profile_id = profile["id"]
        self._set_profile_totals(result, profile)
        biome = donation.get("biome")
        result.biome_id = biome.get("id") if isinstance(biome, dict) else biome
        if result.biome_id is None:
            result.biome_id = self.resolver.resolve_biome(notification.biome_name)[0]["id"]

        wrote = False
        if notification.has_gift:
            gift = self.recorder.find_gift_by_transaction(key)
            if gift is None:
                self._record_gift(notification, result)
                wrote = True
            else:
                result.gift_donation_id = gift["id"]

        self._finish(notification, result)
        if not wrote and not result.granted_cards:
            logger.info(f"Skipped duplicate processing for transaction {key}.")
            self._advance(result, PipelineState.DUPLICATE)

    def _record_gift(self, notification: DonationNotification, result: PipelineResult) -> None:
        result.gift_donation_id = self.recorder.record_gift(
            profile_id=result.profile_id,
            user_id=result.user_id,
            biome_id=result.biome_id,
            amount=notification.amount_gross,
            donation_date=notification.billing_date,
            friend_name=notification.friend_name,
            friend_email=notification.friend_email,
            transaction_id=notification.transaction_id,
        )
        self._advance(result, PipelineState.GIFT_RECORDED)

    def _finish(self, notification: DonationNotification, result: PipelineResult) -> None:
        result.granted_cards = self.loyalty.evaluate_grants(result.user_id, result.total_points)
        self._advance(result, PipelineState.GRANTS_EVALUATED)

        self._mark_stage(notification.transaction_id, COMPLETED_STAGE, donation_id=result.donation_id)
        self._advance(result, PipelineState.COMPLETED)

    @staticmethod
    def _set_profile_totals(result: PipelineResult, profile: dict) -> None:
        result.amount_donated = as_decimal(profile.get("amountDonated"))
        result.total_points = int(profile.get("totalPoints") or 0)

    def _stage_done(self, key: str, stage: str) -> bool:
        if self.ledger is None or not key:
            return False
        try:
            return self.ledger.is_stage_done(key, stage)
        except (ClientError, BotoCoreError) as e:
            raise PipelineError(ErrorKind.BACKEND_UNAVAILABLE, f"Idempotency ledger read failed: {e}") from e

    def _mark_stage(self, key: str, stage: str, **attributes) -> None:
        if self.ledger is None or not key:
            return
        try:
            self.ledger.mark_stage(key, stage, **attributes)
        except (ClientError, BotoCoreError) as e:
            raise PipelineError(ErrorKind.BACKEND_UNAVAILABLE, f"Idempotency ledger write failed: {e}") from e

    @staticmethod
    def _advance(result: PipelineResult, state: PipelineState) -> None:
        result.state = state
        logger.info(f"Notification {result.transaction_id} -> {state.value}")

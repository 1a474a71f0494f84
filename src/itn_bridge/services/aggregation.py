import logging
from decimal import Decimal
from typing import Callable

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from itn_bridge.core.errors import ErrorKind, PipelineError, VersionConflict
from itn_bridge.data_access.strapi import BIOMES, USER_PROFILES, StrapiClient
from itn_bridge.models.donation import Delta, DonationNotification

logger = logging.getLogger(__name__)


def as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def as_number(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


class AggregationEngine:
    """
    Read-modify-write accumulation of running totals.

    The CMS only accepts absolute values, so totals are computed here from a
    snapshot and written back. Before each write the record's ``updatedAt`` is
    compared with the snapshot's; a mismatch means another notification wrote
    in between, and the delta is reapplied to a fresh read. The window between
    that check and the PUT is still open: two writers passing the check at the
    same moment lose one delta. Closing it needs a conditional write or an
    atomic increment on the CMS side.
    """

    def __init__(self, backend: StrapiClient, max_attempts: int = 3):
        self.backend = backend
        self.max_attempts = max_attempts

    def accumulate_profile(self, profile: dict, delta: Delta,
                           notification: DonationNotification | None = None) -> dict:
        def apply(snapshot: dict) -> dict:
            update = {
                "amountDonated": as_number(as_decimal(snapshot.get("amountDonated")) + delta.amount),
                "totalPoints": int(snapshot.get("totalPoints") or 0) + delta.points,
            }
            if notification is not None:
                if notification.gateway_token:
                    update["token"] = notification.gateway_token
                update["friendName"] = notification.friend_name
                update["friendEmail"] = notification.friend_email
                update["billingDate"] = notification.billing_date.isoformat()
            return update

        return self._accumulate(USER_PROFILES, profile, apply)

    def accumulate_biome(self, biome: dict, amount: Decimal, user_id: int | None = None) -> dict:
        def apply(snapshot: dict) -> dict:
            update = {"totalDonated": as_number(as_decimal(snapshot.get("totalDonated")) + amount)}
            if user_id is not None:
                users = [_related_id(entry) for entry in snapshot.get("users") or []]
                if user_id not in users:
                    users.append(user_id)
                update["users"] = users
            return update

        return self._accumulate(BIOMES, biome, apply, populate="users")

    def _accumulate(self, collection: str, snapshot: dict, apply: Callable[[dict], dict],
                    populate: str | None = None) -> dict:
        record_id = snapshot["id"]
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type(VersionConflict),
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    current = self.backend.get(collection, record_id, populate=populate)
                    if current.get("updatedAt") != snapshot.get("updatedAt"):
                        logger.warning(
                            f"Version conflict on {collection}/{record_id}, "
                            f"attempt {attempt.retry_state.attempt_number}"
                        )
                        snapshot = current
                        raise VersionConflict(collection, record_id)

                    update = apply(snapshot)
                    updated = self.backend.update(collection, record_id, update)
                    logger.info(f"Accumulated {collection}/{record_id}: {update}")
                    return updated
        except VersionConflict as e:
            raise PipelineError(
                ErrorKind.BACKEND_REJECTED,
                f"Gave up on {collection}/{record_id} after {self.max_attempts} concurrent updates",
            ) from e


def _related_id(entry):
    if isinstance(entry, dict):
        return entry.get("id")
    return entry

import logging
from datetime import date
from decimal import Decimal

from itn_bridge.data_access.strapi import DONATIONS, GIFT_DONATIONS, StrapiClient
from itn_bridge.services.aggregation import as_number

logger = logging.getLogger(__name__)


class DonationRecorder:
    """Creates donation records. Not idempotent; every call is one new record."""

    def __init__(self, backend: StrapiClient):
        self.backend = backend

    def find_by_transaction(self, transaction_id: str) -> dict | None:
        matches = self.backend.find(DONATIONS, "transactionId", transaction_id, populate="biome")
        return matches[0] if matches else None

    def find_gift_by_transaction(self, transaction_id: str) -> dict | None:
        matches = self.backend.find(GIFT_DONATIONS, "transactionId", transaction_id)
        return matches[0] if matches else None

    def record_donation(self, profile_id: int, user_id: int, biome_id: int,
                        amount: Decimal, donation_date: date, transaction_id: str = "") -> int:
        data = self._donation_fields(profile_id, user_id, biome_id, amount, donation_date, transaction_id)
        donation = self.backend.create(DONATIONS, data)
        logger.info(f"Recorded donation {donation.get('id')} of {amount} for profile {profile_id}")
        return donation["id"]

    def record_gift(self, profile_id: int, user_id: int, biome_id: int, amount: Decimal,
                    donation_date: date, friend_name: str, friend_email: str,
                    transaction_id: str = "") -> int:
        data = self._donation_fields(profile_id, user_id, biome_id, amount, donation_date, transaction_id)
        data.update({"friendName": friend_name, "friendEmail": friend_email})
        gift = self.backend.create(GIFT_DONATIONS, data)
        logger.info(f"Recorded gift donation {gift.get('id')} for {friend_email}")
        return gift["id"]

    @staticmethod
    def _donation_fields(profile_id, user_id, biome_id, amount, donation_date, transaction_id) -> dict:
        data = {
            "amount": as_number(amount),
            "donationDate": donation_date.isoformat(),
            "userProfile": profile_id,
            "user": user_id,
            "biome": biome_id,
        }
        if transaction_id:
            data["transactionId"] = transaction_id
        return data

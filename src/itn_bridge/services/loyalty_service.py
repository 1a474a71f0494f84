import logging

from itn_bridge.data_access.strapi import CARDS, CARDS_COLLECTED, StrapiClient

logger = logging.getLogger(__name__)


class LoyaltyService:
    def __init__(self, backend: StrapiClient):
        self.backend = backend

    def earned_cards(self, cumulative_points: int) -> list[dict]:
        cards = self.backend.list_all(CARDS)
        return [
            card for card in cards
            if int(card.get("pointsRequired") or 0) <= cumulative_points
        ]

    def collected_card_ids(self, user_id: int) -> set[int]:
        grants = self.backend.find_all(CARDS_COLLECTED, "user.id", user_id, populate="card")
        collected = set()
        for grant in grants:
            card = grant.get("card")
            if isinstance(card, dict):
                card = card.get("id")
            if card is not None:
                collected.add(card)
        return collected

    def evaluate_grants(self, user_id: int, cumulative_points: int) -> list[int]:
        """
        Grants every card the points now reach and the user does not hold yet.
        Existing grants are never removed. Returns the newly granted card ids.
        """
        earned = self.earned_cards(cumulative_points)
        if not earned:
            return []

        collected = self.collected_card_ids(user_id)
        granted = []
        for card in sorted(earned, key=lambda c: int(c.get("pointsRequired") or 0)):
            if card["id"] in collected:
                continue
            self.backend.create(CARDS_COLLECTED, {"user": user_id, "card": card["id"]})
            collected.add(card["id"])
            granted.append(card["id"])

        if granted:
            logger.info(f"Granted cards {granted} to user {user_id} at {cumulative_points} points")
        return granted

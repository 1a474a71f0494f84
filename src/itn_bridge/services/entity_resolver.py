import logging
import secrets
from typing import Any

from itn_bridge.core.config import BiomePolicy
from itn_bridge.core.errors import ErrorKind, PipelineError
from itn_bridge.data_access.strapi import BIOMES, USER_PROFILES, USERS, StrapiClient

logger = logging.getLogger(__name__)


class EntityResolver:
    """
    Find-by-natural-key-or-create for users, profiles and biomes.

    The lookup and the create are two separate calls; two concurrent
    notifications for a new key can both miss and both create.
    """

    def __init__(self, backend: StrapiClient, biome_policy: BiomePolicy = "create"):
        self.backend = backend
        self.biome_policy = biome_policy

    def resolve(self, collection: str, field: str, key: Any, defaults: dict,
                operator: str = "$eq", populate: str | None = None) -> tuple[dict, bool]:
        matches = self.backend.find(collection, field, key, operator=operator, populate=populate)
        if matches:
            return matches[0], True

        created = self.backend.create(collection, defaults)
        logger.info(f"Created {collection} record {created.get('id')} for {field}={key!r}")
        return created, False

    def resolve_user(self, email: str) -> tuple[dict, bool]:
        return self.resolve(
            USERS,
            "email",
            email,
            defaults={
                "email": email,
                "username": email,
                "password": secrets.token_urlsafe(24),
                "confirmed": True,
                "blocked": False,
            },
        )

    def resolve_profile(self, user_id: int) -> tuple[dict, bool]:
        return self.resolve(
            USER_PROFILES,
            "user.id",
            user_id,
            defaults={"user": user_id, "amountDonated": 0, "totalPoints": 0},
        )

    def resolve_biome(self, name: str) -> tuple[dict, bool]:
        key = name.strip()
        if not key:
            raise PipelineError(ErrorKind.UNKNOWN_BIOME, "Notification names no biome")

        if self.biome_policy == "fail":
            matches = self.backend.find(BIOMES, "name", key, operator="$eqi", populate="users")
            if not matches:
                raise PipelineError(ErrorKind.UNKNOWN_BIOME, f"Biome {key!r} does not exist")
            return matches[0], True

        return self.resolve(
            BIOMES,
            "name",
            key,
            defaults={"name": key, "totalDonated": 0},
            operator="$eqi",
            populate="users",
        )

import pytest

from itn_bridge.core.errors import ErrorKind, PipelineError
from itn_bridge.services.entity_resolver import EntityResolver


def test_resolve_user_creates_then_finds(strapi, backend):
    resolver = EntityResolver(backend)

    user, existed = resolver.resolve_user("a@x.com")
    again, existed_again = resolver.resolve_user("a@x.com")

    assert not existed
    assert existed_again
    assert again["id"] == user["id"]
    assert len(strapi.records("users")) == 1
    stored = strapi.records("users")[0]
    assert stored["username"] == "a@x.com"
    assert len(stored["password"]) >= 24


def test_resolve_profile_starts_at_zero(strapi, backend):
    resolver = EntityResolver(backend)

    profile, existed = resolver.resolve_profile(7)

    assert not existed
    assert profile["user"] == 7
    assert profile["amountDonated"] == 0
    assert profile["totalPoints"] == 0
    assert resolver.resolve_profile(7)[0]["id"] == profile["id"]


def test_biome_name_is_trimmed_and_case_insensitive(strapi, backend):
    resolver = EntityResolver(backend)

    biome, existed = resolver.resolve_biome("  Forest ")
    same, existed_again = resolver.resolve_biome("FOREST")

    assert not existed
    assert existed_again
    assert same["id"] == biome["id"]
    assert strapi.records("biomes")[0]["name"] == "Forest"


def test_fail_policy_rejects_unknown_biome(strapi, backend):
    resolver = EntityResolver(backend, biome_policy="fail")

    with pytest.raises(PipelineError) as exc:
        resolver.resolve_biome("Tundra")

    assert exc.value.kind is ErrorKind.UNKNOWN_BIOME
    assert exc.value.status_code == 404
    assert strapi.count("POST") == 0


def test_fail_policy_finds_existing_biome(strapi, backend):
    strapi.insert("biomes", {"name": "Tundra", "totalDonated": 0})
    resolver = EntityResolver(backend, biome_policy="fail")

    biome, existed = resolver.resolve_biome("tundra")

    assert existed
    assert biome["name"] == "Tundra"


def test_empty_biome_name_is_unknown(backend):
    with pytest.raises(PipelineError) as exc:
        EntityResolver(backend).resolve_biome("  ")

    assert exc.value.kind is ErrorKind.UNKNOWN_BIOME

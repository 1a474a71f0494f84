import json
import os
import re
from collections import defaultdict

os.environ.setdefault("STRAPI_URL", "http://cms.test")
os.environ.setdefault("STRAPI_API_TOKEN", "test-token")

import httpx
import pytest

from itn_bridge.data_access.strapi import USERS, StrapiClient
from itn_bridge.services.aggregation import AggregationEngine
from itn_bridge.services.donation_recorder import DonationRecorder
from itn_bridge.services.donation_service import DonationService
from itn_bridge.services.entity_resolver import EntityResolver
from itn_bridge.services.loyalty_service import LoyaltyService

RELATIONS = {"user", "users", "card", "biome", "userProfile"}
FILTER_KEY = re.compile(r"^filters((?:\[[^\]]+\])+)$")
FILTER_PART = re.compile(r"\[([^\]]+)\]")
DEFAULT_PAGE_SIZE = 25


class FakeStrapi:
    """
    In-memory stand-in for the CMS REST API, served through httpx.MockTransport.
    Content types answer in the {"data": {"id", "attributes"}} envelope, the
    users plugin answers with bare objects, like the real thing.
    """

    def __init__(self):
        self.collections = defaultdict(dict)
        self.calls = []
        self.failures = {}
        self.hooks = []
        self._next_id = defaultdict(int)
        self._clock = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")[1:]
        collection = parts[0]
        record_id = int(parts[1]) if len(parts) > 1 else None
        self.calls.append((request.method, collection, record_id))

        for hook in list(self.hooks):
            hook(self, request.method, collection, record_id)

        failure = self.failures.get((request.method, collection))
        if failure is not None:
            return httpx.Response(failure, json={"data": None, "error": {"status": failure, "message": "boom"}})

        if request.method == "GET" and record_id is None:
            return self._render_list(collection, self._filter(collection, request.url.params), request.url.params)
        if request.method == "GET":
            record = self.collections[collection].get(record_id)
            if record is None:
                return httpx.Response(404, json={"data": None, "error": {"status": 404, "message": "Not Found"}})
            return self._render_one(collection, record)

        body = json.loads(request.content or b"{}")
        data = body if collection == USERS else body.get("data", {})
        if request.method == "POST":
            return self._render_one(collection, self.insert(collection, data))
        if request.method == "PUT":
            record = self.collections[collection][record_id]
            record.update(data)
            record["updatedAt"] = self._tick()
            return self._render_one(collection, record)
        return httpx.Response(405)

    def insert(self, collection: str, data: dict) -> dict:
        self._next_id[collection] += 1
        record = dict(data, id=self._next_id[collection])
        record["createdAt"] = record["updatedAt"] = self._tick()
        self.collections[collection][record["id"]] = record
        return record

    def records(self, collection: str) -> list[dict]:
        return list(self.collections[collection].values())

    def count(self, method: str | None = None, collection: str | None = None) -> int:
        return sum(
            1 for call in self.calls
            if (method is None or call[0] == method) and (collection is None or call[1] == collection)
        )

    def _tick(self) -> str:
        self._clock += 1
        return f"2024-01-01T00:00:{self._clock:02d}.000Z"

    def _filter(self, collection: str, params) -> list[dict]:
        records = self.records(collection)
        for key, value in params.multi_items():
            match = FILTER_KEY.match(key)
            if not match:
                continue
            path = FILTER_PART.findall(match.group(1))
            field, operator = path[0], path[-1]
            if operator == "$eqi":
                records = [r for r in records if str(r.get(field, "")).lower() == value.lower()]
            else:
                records = [r for r in records if str(r.get(field)) == value]
        return records

    def _render_one(self, collection: str, record: dict) -> httpx.Response:
        if collection == USERS:
            return httpx.Response(200, json=record)
        return httpx.Response(200, json={"data": self._envelope(record), "meta": {}})

    def _render_list(self, collection: str, records: list[dict], params) -> httpx.Response:
        if collection == USERS:
            return httpx.Response(200, json=records)
        page = int(params.get("pagination[page]", 1))
        size = int(params.get("pagination[pageSize]", DEFAULT_PAGE_SIZE))
        window = records[(page - 1) * size:page * size]
        page_count = max(1, -(-len(records) // size))
        return httpx.Response(200, json={
            "data": [self._envelope(record) for record in window],
            "meta": {"pagination": {"page": page, "pageSize": size, "pageCount": page_count, "total": len(records)}},
        })

    @staticmethod
    def _envelope(record: dict) -> dict:
        attributes = {}
        for key, value in record.items():
            if key == "id":
                continue
            if key in RELATIONS:
                if isinstance(value, list):
                    value = {"data": [{"id": v, "attributes": {}} for v in value]}
                elif value is not None:
                    value = {"data": {"id": value, "attributes": {}}}
                else:
                    value = {"data": None}
            attributes[key] = value
        return {"id": record["id"], "attributes": attributes}


@pytest.fixture
def strapi():
    return FakeStrapi()


@pytest.fixture
def backend(strapi):
    client = StrapiClient("http://cms.test", "test-token", transport=httpx.MockTransport(strapi))
    yield client
    client.close()


@pytest.fixture
def make_service(backend):
    def _make(biome_policy="create", ledger=None, max_attempts=3):
        return DonationService(
            resolver=EntityResolver(backend, biome_policy=biome_policy),
            aggregation=AggregationEngine(backend, max_attempts=max_attempts),
            recorder=DonationRecorder(backend),
            loyalty=LoyaltyService(backend),
            ledger=ledger,
        )
    return _make


@pytest.fixture
def service(make_service):
    return make_service()

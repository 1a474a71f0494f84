import logging
from typing import Any

import httpx

from itn_bridge.core.errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)

USERS = "users"
USER_PROFILES = "user-profiles"
BIOMES = "biomes"
DONATIONS = "donations"
GIFT_DONATIONS = "gift-donations"
CARDS = "cards"
CARDS_COLLECTED = "cards-collecteds"

# The users-permissions plugin takes and returns bare bodies, not {"data": ...}.
UNWRAPPED_COLLECTIONS = {USERS}

PAGE_SIZE = 100


def flatten(item: Any) -> Any:
    """
    Turns Strapi's {"id", "attributes": {...}} envelopes into plain dicts and
    relation wrappers ({"data": {...}} / {"data": [...]}) into ids.
    """
    if isinstance(item, list):
        return [flatten(entry) for entry in item]
    if not isinstance(item, dict):
        return item

    if set(item) == {"data"}:
        related = item["data"]
        if related is None:
            return None
        if isinstance(related, list):
            return [entry.get("id") for entry in related]
        return related.get("id")

    if "attributes" in item:
        flat = {"id": item.get("id")}
        flat.update({key: flatten(value) for key, value in item["attributes"].items()})
        return flat

    return {key: flatten(value) if isinstance(value, dict) and set(value) == {"data"} else value
            for key, value in item.items()}


class StrapiClient:
    """
    Minimal REST client for the CMS: filtered GET, GET by id, POST, PUT.
    Every failure is raised as a PipelineError.
    """

    def __init__(self, base_url: str, api_token: str, timeout: float = 10.0,
                 transport: httpx.BaseTransport | None = None):
        self.http = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/api",
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.http.close()

    @staticmethod
    def _filter_params(field: str, value: Any, operator: str, populate: str | None) -> dict:
        path = "".join(f"[{part}]" for part in field.split("."))
        params = {f"filters{path}[{operator}]": value}
        if populate:
            params["populate"] = populate
        return params

    def find(self, collection: str, field: str, value: Any, operator: str = "$eq",
             populate: str | None = None) -> list[dict]:
        """First page of matches only; enough for natural-key lookups."""
        params = self._filter_params(field, value, operator, populate)
        return self._as_list(self._request("GET", f"/{collection}", params=params))

    def find_all(self, collection: str, field: str, value: Any, operator: str = "$eq",
                 populate: str | None = None) -> list[dict]:
        return self.list_all(collection, self._filter_params(field, value, operator, populate))

    def list_all(self, collection: str, params: dict | None = None) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            body = self._request(
                "GET",
                f"/{collection}",
                params={**(params or {}), "pagination[page]": page, "pagination[pageSize]": PAGE_SIZE},
            )
            items.extend(self._as_list(body))
            page_count = 1
            if isinstance(body, dict):
                page_count = body.get("meta", {}).get("pagination", {}).get("pageCount", 1)
            if page >= page_count:
                return items
            page += 1

    def get(self, collection: str, record_id: int, populate: str | None = None) -> dict:
        params = {"populate": populate} if populate else None
        return self._as_item(self._request("GET", f"/{collection}/{record_id}", params=params))

    def create(self, collection: str, data: dict) -> dict:
        return self._as_item(self._request("POST", f"/{collection}", json=self._wrap(collection, data)))

    def update(self, collection: str, record_id: int, data: dict) -> dict:
        return self._as_item(
            self._request("PUT", f"/{collection}/{record_id}", json=self._wrap(collection, data))
        )

    @staticmethod
    def _wrap(collection: str, data: dict) -> dict:
        if collection in UNWRAPPED_COLLECTIONS:
            return data
        return {"data": data}

    @staticmethod
    def _as_list(body: Any) -> list[dict]:
        if isinstance(body, dict):
            body = body.get("data") or []
        return flatten(body or [])

    @staticmethod
    def _as_item(body: Any) -> dict:
        if isinstance(body, dict) and "data" in body and "id" not in body:
            body = body["data"]
        return flatten(body or {})

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"CMS timeout on {method} {url}: {e}")
            raise PipelineError(ErrorKind.BACKEND_UNAVAILABLE, f"CMS timed out on {method} {url}") from e
        except httpx.TransportError as e:
            logger.error(f"CMS unreachable on {method} {url}: {e}")
            raise PipelineError(ErrorKind.BACKEND_UNAVAILABLE, f"CMS unreachable on {method} {url}") from e

        if response.is_error:
            detail = self._error_detail(response)
            logger.error(f"CMS rejected {method} {url} with {response.status_code}: {detail}")
            raise PipelineError(
                ErrorKind.BACKEND_REJECTED,
                f"CMS returned {response.status_code} for {method} {url}",
                detail=detail,
            )

        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_detail(response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict) and "error" in body:
            return body["error"]
        return body

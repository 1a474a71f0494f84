import hashlib
import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote_plus

import httpx

from itn_bridge.core.errors import ErrorKind, PipelineError

logger = logging.getLogger(__name__)

API_VERSION = "v1"


def generate_signature(params: dict[str, Any], passphrase: str = "") -> str:
    """
    MD5 over ``key=value`` pairs in alphabetical key order, values
    url-encoded, with the passphrase included as one of the pairs.
    """
    payload = {key: value for key, value in params.items() if value not in (None, "")}
    if passphrase:
        payload["passphrase"] = passphrase
    encoded = "&".join(f"{key}={quote_plus(str(payload[key]))}" for key in sorted(payload))
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()


class SubscriptionService:
    def __init__(self, client: httpx.Client, merchant_id: str, passphrase: str, sandbox: bool = False):
        self.client = client
        self.merchant_id = merchant_id
        self.passphrase = passphrase
        self.sandbox = sandbox

    def signed_headers(self, timestamp: str | None = None) -> dict[str, str]:
        headers = {
            "merchant-id": self.merchant_id,
            "version": API_VERSION,
            "timestamp": timestamp or datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        headers["signature"] = generate_signature(headers, self.passphrase)
        return headers

    def cancel_subscription(self, token: str) -> dict:
        params = {"testing": "true"} if self.sandbox else None

        logger.info(f"Cancelling subscription {token}...")
        try:
            response = self.client.put(
                f"/subscriptions/{token}/cancel",
                headers=self.signed_headers(),
                params=params,
            )
        except httpx.HTTPError as e:
            logger.error(f"Gateway unreachable while cancelling {token}: {e}")
            raise PipelineError(ErrorKind.GATEWAY_REJECTED, f"Gateway unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"status": "error", "data": response.text}

        if not isinstance(body, dict) or body.get("status") != "success":
            logger.error(f"Gateway refused to cancel {token} ({response.status_code}): {body}")
            raise PipelineError(ErrorKind.GATEWAY_REJECTED, "Gateway did not cancel the subscription", detail=body)

        logger.info(f"Successfully cancelled subscription {token}")
        return body

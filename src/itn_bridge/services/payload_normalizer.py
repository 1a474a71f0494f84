import html
import logging
from typing import Mapping

from pydantic import ValidationError

from itn_bridge.core.config import DEFAULT_FIELD_MAP
from itn_bridge.core.errors import ErrorKind, PipelineError
from itn_bridge.models.donation import DonationNotification

logger = logging.getLogger(__name__)


def decode_field(value) -> str:
    """The gateway entity-encodes reserved characters, e.g. ``&amp;`` in names."""
    if value is None:
        return ""
    return html.unescape(str(value)).strip()


def normalize_payload(raw: Mapping[str, str],
                      field_map: Mapping[str, str] = DEFAULT_FIELD_MAP) -> DonationNotification:
    fields = {}
    for gateway_field, attribute in field_map.items():
        if gateway_field not in raw:
            continue
        value = decode_field(raw[gateway_field])
        if value:
            fields[attribute] = value

    if not fields.get("email"):
        raise PipelineError(ErrorKind.MISSING_IDENTITY, "Notification carries no email address")

    try:
        return DonationNotification(**fields)
    except ValidationError as e:
        logger.warning(f"Rejected notification payload: {e.errors(include_url=False)}")
        raise PipelineError(
            ErrorKind.INVALID_PAYLOAD,
            "Notification payload failed validation",
            detail=e.errors(include_url=False, include_context=False),
        ) from e

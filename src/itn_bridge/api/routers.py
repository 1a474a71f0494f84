from fastapi import (
    APIRouter,
    Request,
    Depends,
    HTTPException
)
import logging

from itn_bridge.core.dependencies import get_donation_service, get_subscription_service
from itn_bridge.core.errors import PipelineError
from itn_bridge.api.schemas import CancelSubscriptionRequest, CancelSubscriptionResponse, ProcessItnResponse
from itn_bridge.services.donation_service import DonationService
from itn_bridge.services.subscription_service import SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


async def itn_payload(request: Request) -> dict[str, str]:
    """The gateway posts form-encoded bodies; JSON is accepted for manual replays."""
    if request.headers.get("content-type", "").startswith("application/json"):
        body = await request.json()
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return {key: str(value) for key, value in body.items() if value is not None}

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _error_detail(e: PipelineError) -> dict:
    detail = {"error": e.kind.value, "message": e.message}
    if e.detail is not None:
        detail["detail"] = e.detail
    return detail


@router.post(
    "/process-itn",
    response_model=ProcessItnResponse
)
def process_itn(
    payload: dict[str, str] = Depends(itn_payload),
    donation_service: DonationService = Depends(get_donation_service)
):
    """
    Receives Instant Transaction Notifications from the payment gateway
    and applies them to the CMS.
    """
    try:
        result = donation_service.process_notification(payload)
    except PipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=_error_detail(e))
    except Exception as e:
        logger.exception(f"ITN internal error: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")

    return ProcessItnResponse(
        status="success",
        state=result.state.value,
        **result.model_dump(exclude={"state", "user_id", "profile_id", "biome_id"})
    )


@router.post(
    "/cancel-subscription",
    response_model=CancelSubscriptionResponse
)
def cancel_subscription(
    body: CancelSubscriptionRequest,
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    try:
        gateway_body = subscription_service.cancel_subscription(body.token)
    except PipelineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail if e.detail is not None else e.message)
    except Exception as e:
        logger.exception(f"Cancel subscription internal error: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")

    return CancelSubscriptionResponse(status="success", data=gateway_body.get("data"))

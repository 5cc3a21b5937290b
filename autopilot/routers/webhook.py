from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from autopilot.logging_config import get_logger
from autopilot.schemas.webhook import WahaWebhook, WebhookResponse
from autopilot.services.runtime import AutopilotRuntime

logger = get_logger("webhook")

router = APIRouter()


def get_runtime(request: Request) -> AutopilotRuntime:
    return request.app.state.runtime


def _parse_origin_timestamp(raw: Optional[str]) -> Optional[int]:
    """``x-webhook-timestamp`` header, epoch milliseconds."""
    if not raw:
        return None
    try:
        return int(float(raw))
    except ValueError:
        logger.warning(f"Ignoring unparseable x-webhook-timestamp: {raw[:40]}")
        return None


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content=WebhookResponse(success=False, message=message).model_dump())


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    runtime: AutopilotRuntime = Depends(get_runtime),
):
    """Acknowledge the gateway immediately; classification runs after the response."""
    try:
        payload = await request.json()
    except Exception as exc:
        logger.warning("Webhook payload is not valid JSON", extra={"context": {"error": str(exc)}})
        return _bad_request("Invalid JSON payload")

    if not isinstance(payload, dict):
        return _bad_request("Invalid payload format")

    try:
        envelope = WahaWebhook.model_validate(payload)
    except ValidationError as exc:
        logger.info(
            "Webhook payload missing expected fields",
            extra={"context": {"payload_keys": list(payload.keys())[:20], "errors": exc.error_count()}},
        )
        return _bad_request("Missing session or payload")

    origin_ts_ms = _parse_origin_timestamp(request.headers.get("x-webhook-timestamp"))
    background_tasks.add_task(runtime.handle_payload, envelope.model_dump(), origin_ts_ms)
    return WebhookResponse(success=True, message="accepted")

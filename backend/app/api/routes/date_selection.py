from __future__ import annotations

from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from ... import date_selection
from ...auth import AuthCredentials, require_auth
from ...errors import TripDateSelectionError, ValidationError
from ...logging_config import get_logger
from ...metrics import date_selection_actions_total
from ...schemas import TripDateSelectionRequest

logger = get_logger(__name__)

router = APIRouter(tags=["trip-date-selection"])


def _ok(data: dict[str, Any]) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"ok": True, "data": data}))


async def _parse_body(request: Request) -> TripDateSelectionRequest:
    try:
        raw = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON") from exc
    if not isinstance(raw, dict):
        raise ValidationError("Invalid JSON")
    try:
        return TripDateSelectionRequest.model_validate(raw)
    except PydanticValidationError as exc:
        if any(error["loc"][:1] == ("action",) for error in exc.errors()):
            raise ValidationError("Invalid action") from exc
        raise ValidationError("Invalid request body") from exc


@router.post("/trip-date-selection")
async def trip_date_selection(request: Request, credentials: AuthCredentials) -> JSONResponse:
    """
    Single entry point for the date selection flow, dispatched on `action`.

    `send_options` and `mark_paid` need a bearer credential; `preview` and `confirm`
    are authorised by the selection token alone.
    """
    body = await _parse_body(request)

    match body.action:
        case "send_options":
            claims = await require_auth(credentials)
            data = await date_selection.send_options(
                claims,
                fulfillment_id=body.fulfillment_id,
                booking_id=body.booking_id,
                proposed_dates=body.proposed_dates,
            )
        case "preview":
            data = await date_selection.preview(body.token, body.lang)
        case "confirm":
            data = await date_selection.confirm(body.token, body.selected_date)
        case "mark_paid":
            claims = await require_auth(credentials)
            data = await date_selection.mark_paid(
                claims,
                fulfillment_id=body.fulfillment_id,
                checkout_session_id=body.checkout_session_id,
                payment_intent_id=body.payment_intent_id,
            )
    return _ok(data)


async def _handle_service_error(request: Request, exc: TripDateSelectionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "trip_date_selection_failed",
            path=request.url.path,
            status_code=exc.status_code,
            error=exc.message,
        )
    else:
        date_selection_actions_total.labels(action="request", outcome=str(exc.status_code)).inc()
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TripDateSelectionError, _handle_service_error)  # type: ignore[arg-type]


__all__ = ["register_error_handlers", "router"]

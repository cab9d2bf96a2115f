"""Outbox writer for downstream email/SMS delivery."""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from .logging_config import get_logger
from .metrics import notifications_enqueued_total
from .storage import DB

logger = get_logger(__name__)


async def enqueue_notification(
    *,
    category: str,
    event: str,
    record_id: str | None,
    table_name: str | None,
    payload: dict[str, Any],
    dedupe_key: str,
) -> bool:
    """
    Write one outbox row unless `dedupe_key` was already used.

    Returns True when a new row was written. Store failures are logged and reported
    as False; the calling action carries on.
    """
    try:
        inserted = await DB.insert_notification(
            {
                "category": category,
                "event": event,
                "record_id": record_id,
                "table_name": table_name,
                "payload": payload,
                "dedupe_key": dedupe_key,
                "status": "pending",
            }
        )
    except SQLAlchemyError as exc:
        notifications_enqueued_total.labels(event=event, result="failed").inc()
        logger.error(
            "notification_enqueue_failed", notification_event=event, error=str(exc)
        )
        return False

    result = "inserted" if inserted else "deduplicated"
    notifications_enqueued_total.labels(event=event, result=result).inc()
    logger.info("notification_enqueued", notification_event=event, result=result)
    return inserted


__all__ = ["enqueue_notification"]

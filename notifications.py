"""
Best-effort notifications for booking state changes.

`dispatch_notification` is scheduled as a FastAPI background task. It posts
the event to NOTIFY_WEBHOOK_URL when one is configured and records the
outcome in the `notification` collection. Failures are logged and stored,
never raised to the caller.
"""

import logging
import os
from typing import Any, Dict, Optional

import requests

import database
from schemas import Notification

logger = logging.getLogger(__name__)

NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "5"))


def _payload(event: str, booking: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event": event,
        "booking_id": booking.get("id"),
        "user_id": booking.get("user_id"),
        "driver_id": booking.get("driver_id"),
        "status": booking.get("status"),
    }


def dispatch_notification(event: str, booking: Dict[str, Any]) -> bool:
    delivered = False
    error: Optional[str] = None

    if NOTIFY_WEBHOOK_URL:
        try:
            r = requests.post(NOTIFY_WEBHOOK_URL, json=_payload(event, booking), timeout=NOTIFY_TIMEOUT)
            r.raise_for_status()
            delivered = True
        except requests.RequestException as e:
            error = str(e)[:200]
            logger.warning("Notification %s for booking %s failed: %s", event, booking.get("id"), error)
    else:
        logger.debug("No webhook configured, recording %s only", event)

    if database.db is not None:
        try:
            database.create_document(
                "notification",
                Notification(event=event, booking_id=booking.get("id"), delivered=delivered, error=error),
            )
        except Exception:
            logger.exception("Could not record notification %s", event)

    if delivered:
        logger.info("Notification %s sent for booking %s", event, booking.get("id"))
    return delivered

"""
Driver directory and assignment.

A driver is claimed by flipping `is_available` from true to false in a single
find_one_and_update, so only one caller can win a given driver. Round robin
picks the available driver that was assigned least recently.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, ReturnDocument

import database

logger = logging.getLogger(__name__)


def list_available_drivers(limit: int = 50) -> List[Dict[str, Any]]:
    return list(
        database.db["driver"]
        .find({"is_available": True})
        .sort([("last_assigned_at", ASCENDING), ("_id", ASCENDING)])
        .limit(limit)
    )


def _claim(filter_dict: Dict[str, Any], booking_id: str, sort=None) -> Optional[Dict[str, Any]]:
    # returns the pre-claim document so a rollback can restore last_assigned_at
    now = database.utcnow()
    query = dict(filter_dict, is_available=True)
    return database.db["driver"].find_one_and_update(
        query,
        {"$set": {
            "is_available": False,
            "current_booking_id": booking_id,
            "last_assigned_at": now,
            "updated_at": now,
        }},
        sort=sort,
        return_document=ReturnDocument.BEFORE,
    )


def claim_driver(driver_id: str, booking_id: str) -> Optional[Dict[str, Any]]:
    """Claim a specific driver. None when the driver is unknown or already busy.

    The returned document is the driver as it was just before the claim.
    """
    oid = database.to_object_id(driver_id)
    if oid is None:
        return None
    driver = _claim({"_id": oid}, booking_id)
    if driver:
        logger.info("Driver %s claimed for booking %s", driver_id, booking_id)
    return driver


def claim_next_driver(booking_id: str) -> Optional[Dict[str, Any]]:
    """Claim the least recently assigned available driver, or None if nobody is free."""
    driver = _claim({}, booking_id, sort=[("last_assigned_at", ASCENDING), ("_id", ASCENDING)])
    if driver:
        logger.info("Driver %s picked by round robin for booking %s", driver["_id"], booking_id)
    else:
        logger.info("No available driver for booking %s", booking_id)
    return driver


def release_driver(driver_id: Optional[str], booking_id: Optional[str] = None, last_assigned_at: Optional[datetime] = None) -> bool:
    """Make a driver available again. With booking_id, only if still held for that booking.

    Pass last_assigned_at to undo a claim that never turned into a trip, so the
    driver keeps its round-robin position.
    """
    oid = database.to_object_id(driver_id) if driver_id else None
    if oid is None:
        return False
    query: Dict[str, Any] = {"_id": oid}
    if booking_id is not None:
        query["current_booking_id"] = booking_id
    update: Dict[str, Any] = {"is_available": True, "current_booking_id": None, "updated_at": database.utcnow()}
    if last_assigned_at is not None:
        update["last_assigned_at"] = last_assigned_at
    res = database.db["driver"].update_one(query, {"$set": update})
    if res.modified_count:
        logger.info("Driver %s released", driver_id)
    return res.modified_count > 0

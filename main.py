import hashlib
import hmac
import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
import dispatch
from notifications import dispatch_notification
from pricing import DEFAULT_VEHICLE_CLASS, RATE_TABLE, UnknownVehicleClass, estimate_fare, trip_distance_km
from schemas import (
    BOOKING_STATUSES,
    AssignRequest,
    Booking,
    BookingCreate,
    BookingOut,
    BookingUpdate,
    Driver,
    DriverCreate,
    Location,
    LoginRequest,
    User,
    UserCreate,
    as_utc,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    yield


app = FastAPI(title="Taxi Booking API", description="Booking, dispatch and pricing backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")
if os.path.isdir(STATIC_DIR):
    app.mount("/app", StaticFiles(directory=STATIC_DIR, html=True), name="app")


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


class IdKeyResponse(BaseModel):
    id: str
    api_key: Optional[str] = None


class IdResponse(BaseModel):
    id: str


# Utility

def require_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database.db


def to_str_id(doc):
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def get_doc_by_id(collection: str, _id: str):
    require_db()
    doc = database.get_document(collection, _id)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{collection.capitalize()} not found")
    return doc


def booking_out(doc) -> BookingOut:
    return BookingOut.model_validate(to_str_id(doc))


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), 200_000)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, expected = password_hash.partition("$")
    if not expected:
        return False
    return hmac.compare_digest(hash_password(password, salt), password_hash)


@app.get("/")
def read_root():
    return {"message": "Taxi Booking backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = database.db
    if db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
    return response


# Users

@app.post("/users", response_model=IdKeyResponse, status_code=201)
def create_user(payload: UserCreate):
    db = require_db()
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    api_key = secrets.token_hex(16)
    user = User(email=payload.email, name=payload.name, password_hash=hash_password(payload.password), api_key=api_key)
    try:
        user_id = database.create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    logger.info("User %s registered", user_id)
    return {"id": user_id, "api_key": api_key}


@app.post("/auth/login", response_model=IdKeyResponse)
def login(payload: LoginRequest):
    db = require_db()
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return {"id": str(user["_id"]), "api_key": user["api_key"]}


@app.get("/users/me")
def current_user(x_api_key: Optional[str] = Header(None)):
    db = require_db()
    user = db["user"].find_one({"api_key": x_api_key}) if x_api_key else None
    if not user:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return {"id": str(user["_id"]), "email": user["email"], "name": user["name"]}


# Pricing

@app.get("/pricing/rates")
def pricing_rates():
    return {"default": DEFAULT_VEHICLE_CLASS, "rates": RATE_TABLE}


@app.get("/pricing/estimate")
def pricing_estimate(
    distance_km: Optional[float] = Query(None, ge=0),
    from_lat: Optional[float] = Query(None, ge=-90, le=90),
    from_lng: Optional[float] = Query(None, ge=-180, le=180),
    to_lat: Optional[float] = Query(None, ge=-90, le=90),
    to_lng: Optional[float] = Query(None, ge=-180, le=180),
    vehicle_class: str = DEFAULT_VEHICLE_CLASS,
):
    coords = [from_lat, from_lng, to_lat, to_lng]
    pickup = dropoff = None
    if all(c is not None for c in coords):
        pickup = Location(lat=from_lat, lng=from_lng)
        dropoff = Location(lat=to_lat, lng=to_lng)
    elif any(c is not None for c in coords):
        raise HTTPException(status_code=400, detail="Provide all of from_lat, from_lng, to_lat, to_lng")
    distance = trip_distance_km(pickup, dropoff, distance_km)
    if distance is None:
        raise HTTPException(status_code=400, detail="Provide distance_km or pickup and dropoff coordinates")
    try:
        fare = estimate_fare(distance, vehicle_class)
    except UnknownVehicleClass:
        raise HTTPException(status_code=400, detail=f"Unknown vehicle class: {vehicle_class}")
    rates = RATE_TABLE[vehicle_class]
    return {
        "fare": fare,
        "distance_km": distance,
        "vehicle_class": vehicle_class,
        "base_rate": rates["base"],
        "per_km_rate": rates["per_km"],
    }


# Bookings

# new status -> statuses it may be reached from
TRANSITIONS: Dict[str, tuple] = {
    "confirmed": ("pending",),
    "assigned": ("pending", "confirmed"),
    "cancelled": ("pending", "confirmed", "assigned"),
    "completed": ("assigned",),
}
EDITABLE_STATUSES = ("pending", "confirmed")


def _conditional_update(booking: Dict[str, Any], update: Dict[str, Any], extra_filter: Optional[Dict[str, Any]] = None):
    query = {"_id": booking["_id"], "status": booking["status"]}
    if extra_filter:
        query.update(extra_filter)
    update = dict(update, updated_at=database.utcnow())
    return database.db["booking"].find_one_and_update(query, {"$set": update}, return_document=ReturnDocument.AFTER)


def _transition(booking_id: str, new_status: str, background_tasks: BackgroundTasks) -> BookingOut:
    booking = get_doc_by_id("booking", booking_id)
    if booking["status"] not in TRANSITIONS[new_status]:
        raise HTTPException(status_code=409, detail=f"Cannot move booking from {booking['status']} to {new_status}")
    updated = _conditional_update(booking, {"status": new_status})
    if updated is None:
        raise HTTPException(status_code=409, detail="Booking was modified concurrently")
    if new_status in ("cancelled", "completed") and booking.get("driver_id"):
        dispatch.release_driver(booking["driver_id"], booking_id)
    logger.info("Booking %s %s -> %s", booking_id, booking["status"], new_status)
    out = booking_out(updated)
    background_tasks.add_task(dispatch_notification, f"booking.{new_status}", out.model_dump())
    return out


def _assign(booking_id: str, claim, background_tasks: BackgroundTasks) -> BookingOut:
    booking = get_doc_by_id("booking", booking_id)
    if booking["status"] not in TRANSITIONS["assigned"]:
        raise HTTPException(status_code=409, detail=f"Cannot assign a driver to a {booking['status']} booking")
    driver = claim(booking_id)
    if driver is None:
        raise HTTPException(status_code=409, detail="Driver not available")
    driver_id = str(driver["_id"])
    updated = _conditional_update(booking, {"status": "assigned", "driver_id": driver_id}, {"driver_id": None})
    if updated is None:
        dispatch.release_driver(driver_id, booking_id, last_assigned_at=driver.get("last_assigned_at"))
        raise HTTPException(status_code=409, detail="Booking was modified concurrently")
    logger.info("Booking %s assigned to driver %s", booking_id, driver_id)
    out = booking_out(updated)
    background_tasks.add_task(dispatch_notification, "booking.assigned", out.model_dump())
    return out


@app.post("/bookings", response_model=BookingOut, status_code=201)
def create_booking(payload: BookingCreate, background_tasks: BackgroundTasks):
    require_db()
    if payload.start_time <= database.utcnow():
        raise HTTPException(status_code=400, detail="start_time must be in the future")

    vehicle_class = payload.resource_id if payload.resource_id in RATE_TABLE else DEFAULT_VEHICLE_CLASS
    distance = trip_distance_km(payload.pickup, payload.dropoff, payload.distance_km)
    booking = Booking(
        **payload.model_dump(exclude={"distance_km"}),
        distance_km=distance,
        fare_estimate=estimate_fare(distance, vehicle_class) if distance is not None else None,
    )
    booking_id = database.create_document("booking", booking)
    logger.info("Booking %s created for user %s", booking_id, booking.user_id)

    out = booking_out(database.get_document("booking", booking_id))
    background_tasks.add_task(dispatch_notification, "booking.created", out.model_dump())
    return out


@app.get("/bookings", response_model=List[BookingOut])
def list_bookings(status: Optional[str] = None, user_id: Optional[str] = None):
    require_db()
    filter_dict: Dict[str, Any] = {}
    if status:
        if status not in BOOKING_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        filter_dict["status"] = status
    if user_id:
        filter_dict["user_id"] = user_id
    docs = database.get_documents("booking", filter_dict, limit=200)
    return [booking_out(d) for d in docs]


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str):
    return booking_out(get_doc_by_id("booking", booking_id))


@app.put("/bookings/{booking_id}", response_model=BookingOut)
def update_booking(booking_id: str, payload: BookingUpdate, background_tasks: BackgroundTasks):
    booking = get_doc_by_id("booking", booking_id)
    if booking["status"] not in EDITABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"A {booking['status']} booking cannot be edited")
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        return booking_out(booking)

    start = update.get("start_time", as_utc(booking["start_time"]))
    end = update.get("end_time", as_utc(booking.get("end_time")))
    if "start_time" in update and start <= database.utcnow():
        raise HTTPException(status_code=400, detail="start_time must be in the future")
    if end is not None and end <= start:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")

    updated = _conditional_update(booking, update)
    if updated is None:
        raise HTTPException(status_code=409, detail="Booking was modified concurrently")
    logger.info("Booking %s updated: %s", booking_id, ", ".join(sorted(update)))
    out = booking_out(updated)
    background_tasks.add_task(dispatch_notification, "booking.updated", out.model_dump())
    return out


@app.put("/bookings/{booking_id}/confirm", response_model=BookingOut)
def confirm_booking(booking_id: str, background_tasks: BackgroundTasks):
    return _transition(booking_id, "confirmed", background_tasks)


@app.put("/bookings/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: str, background_tasks: BackgroundTasks):
    return _transition(booking_id, "cancelled", background_tasks)


@app.put("/bookings/{booking_id}/complete", response_model=BookingOut)
def complete_booking(booking_id: str, background_tasks: BackgroundTasks):
    return _transition(booking_id, "completed", background_tasks)


@app.post("/bookings/{booking_id}/dispatch", response_model=BookingOut)
def dispatch_booking(booking_id: str, background_tasks: BackgroundTasks):
    return _assign(booking_id, dispatch.claim_next_driver, background_tasks)


# Drivers

@app.post("/drivers", response_model=IdResponse, status_code=201)
def create_driver(payload: DriverCreate):
    require_db()
    driver_id = database.create_document("driver", Driver(**payload.model_dump()))
    logger.info("Driver %s registered", driver_id)
    return {"id": driver_id}


@app.get("/drivers")
def list_drivers():
    require_db()
    return [to_str_id(d) for d in database.get_documents("driver")]


@app.get("/drivers/available")
def available_drivers():
    require_db()
    return [to_str_id(d) for d in dispatch.list_available_drivers()]


@app.get("/drivers/{driver_id}")
def get_driver(driver_id: str):
    return to_str_id(get_doc_by_id("driver", driver_id))


@app.patch("/drivers/{driver_id}/location")
def update_driver_location(driver_id: str, loc: Location):
    driver = get_doc_by_id("driver", driver_id)
    res = database.db["driver"].update_one(
        {"_id": driver["_id"]},
        {"$set": {"location": loc.model_dump(), "updated_at": database.utcnow()}},
    )
    return {"updated": res.modified_count > 0}


@app.post("/drivers/{driver_id}/assign", response_model=BookingOut)
def assign_driver(driver_id: str, payload: AssignRequest, background_tasks: BackgroundTasks):
    get_doc_by_id("driver", driver_id)
    return _assign(payload.booking_id, lambda bid: dispatch.claim_driver(driver_id, bid), background_tasks)


# Dashboard

@app.get("/dashboard")
def dashboard():
    db = require_db()
    counts = {s: db["booking"].count_documents({"status": s}) for s in BOOKING_STATUSES}
    return {
        "bookings": counts,
        "total_bookings": sum(counts.values()),
        "available_drivers": db["driver"].count_documents({"is_available": True}),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

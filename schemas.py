"""
Database Schemas

Taxi booking app schemas using Pydantic models.
Each class name maps to a MongoDB collection with its lowercase name.
- User -> user
- Driver -> driver
- Booking -> booking
- Notification -> notification

Request bodies and response shapes that are not collections live at the end.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

BookingStatus = Literal["pending", "confirmed", "assigned", "cancelled", "completed"]
BOOKING_STATUSES = ("pending", "confirmed", "assigned", "cancelled", "completed")

VehicleClass = Literal["standard", "premium", "xl"]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive datetimes that are already UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_stored_utc(value: Optional[datetime]) -> Optional[datetime]:
    """UTC, refusing precision below the millisecond that Mongo would drop on write."""
    value = as_utc(value)
    if value is not None and value.microsecond % 1000:
        raise ValueError("times must not be more precise than a millisecond")
    return value


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class User(BaseModel):
    email: EmailStr = Field(..., description="Login email, unique")
    name: str = Field(..., min_length=1, description="Full name")
    password_hash: str = Field(..., description="Salted PBKDF2 hash")
    api_key: str = Field(..., description="Token sent as X-API-Key")


class Driver(BaseModel):
    name: str = Field(..., min_length=1, description="Driver full name")
    license_number: str = Field(..., min_length=1, description="Driving license id")
    phone: Optional[str] = Field(None, description="Contact phone number")
    location: Optional[Location] = Field(None, description="Last known location")
    is_available: bool = Field(True, description="Availability for bookings")
    current_booking_id: Optional[str] = None
    last_assigned_at: datetime = Field(
        default_factory=lambda: datetime(1970, 1, 1, tzinfo=timezone.utc),
        description="Round-robin cursor",
    )


class BookingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1, validation_alias=AliasChoices("user_id", "userId"))
    resource_id: str = Field(..., min_length=1, validation_alias=AliasChoices("resource_id", "resourceId"))
    start_time: datetime = Field(..., validation_alias=AliasChoices("start_time", "startTime", "dateTime"))
    end_time: Optional[datetime] = Field(None, validation_alias=AliasChoices("end_time", "endTime"))
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    pickup: Optional[Location] = None
    dropoff: Optional[Location] = None
    distance_km: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, v):
        return as_stored_utc(v)

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BookingUpdate(BaseModel):
    start_time: Optional[datetime] = Field(None, validation_alias=AliasChoices("start_time", "startTime", "dateTime"))
    end_time: Optional[datetime] = Field(None, validation_alias=AliasChoices("end_time", "endTime"))
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, v):
        return as_stored_utc(v)


class Booking(BaseModel):
    user_id: str
    resource_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    pickup: Optional[Location] = None
    dropoff: Optional[Location] = None
    distance_km: Optional[float] = None
    fare_estimate: Optional[float] = Field(None, description="Estimated fare")
    driver_id: Optional[str] = None
    notes: Optional[str] = None
    status: BookingStatus = "pending"


class BookingOut(Booking):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class Notification(BaseModel):
    event: str
    booking_id: Optional[str] = None
    delivered: bool = False
    error: Optional[str] = None


# Request bodies

class UserCreate(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class DriverCreate(BaseModel):
    name: str = Field(..., min_length=1)
    license_number: str = Field(..., min_length=1)
    phone: Optional[str] = None
    location: Optional[Location] = None


class AssignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., validation_alias=AliasChoices("booking_id", "bookingId"))

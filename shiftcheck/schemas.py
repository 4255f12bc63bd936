from datetime import date, date as calendar_date, datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shiftcheck.models import MAX_ROW_ID, AttendanceStatus, ShiftStatus, Weekday


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int
    role: str
    company: str


class UserLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class CheckinRequest(BaseModel):
    qr_data: str = Field(alias="qrData", min_length=1, max_length=4096)
    user_location: UserLocation = Field(alias="userLocation")

    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(BaseModel):
    shift_id: int = Field(alias="shiftId", ge=1, le=MAX_ROW_ID)
    user_location: UserLocation = Field(alias="userLocation")

    model_config = ConfigDict(populate_by_name=True)


class AttendanceRead(BaseModel):
    id: int
    employee_id: int
    shift_id: int
    date: date
    check_in_time: datetime | None
    check_out_time: datetime | None
    status: AttendanceStatus
    location: list[float] | None = None
    qr_data: str | None = None
    notes: str | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ShiftRead(BaseModel):
    id: int
    employee_id: int
    date: date
    day: Weekday
    start_time_local: time
    end_time_local: time
    status: ShiftStatus
    location_id: int | None = None
    geofence_name: str | None = None
    geofence_lat: float | None = None
    geofence_lon: float | None = None
    geofence_radius_m: float | None = None
    qr_issued_at: datetime | None = None
    qr_expires_at: datetime | None = None
    check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    check_in_location: list[float] | None = None
    check_out_location: list[float] | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceActionResponse(BaseModel):
    ok: bool = True
    message: str
    attendance: AttendanceRead
    shift: ShiftRead


class InlineGeofenceInput(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius_m: float = Field(default=100, ge=1, le=5000)


class ShiftCreate(BaseModel):
    employee_id: int = Field(ge=1, le=MAX_ROW_ID)
    date: date
    start_time: time
    end_time: time
    location_id: int | None = Field(default=None, ge=1, le=MAX_ROW_ID)
    geofence: InlineGeofenceInput | None = None

    @model_validator(mode="after")
    def _validate_geofence_choice(self) -> "ShiftCreate":
        if self.location_id is not None and self.geofence is not None:
            raise ValueError("Provide either location_id or an inline geofence, not both.")
        return self


class ShiftUpdate(BaseModel):
    date: calendar_date | None = None
    start_time: time | None = None
    end_time: time | None = None
    location_id: int | None = Field(default=None, ge=1, le=MAX_ROW_ID)
    geofence: InlineGeofenceInput | None = None

    @model_validator(mode="after")
    def _validate_geofence_choice(self) -> "ShiftUpdate":
        if self.location_id is not None and self.geofence is not None:
            raise ValueError("Provide either location_id or an inline geofence, not both.")
        return self


class QrCodeResponse(BaseModel):
    shift_id: int
    qr_data: str
    issued_at: datetime
    expires_at: datetime


class LocationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    address: str = Field(min_length=1, max_length=500)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    dms: str | None = Field(default=None, max_length=64)
    radius_m: int = Field(default=100, ge=10, le=1000)

    @model_validator(mode="after")
    def _validate_coordinates(self) -> "LocationCreate":
        has_decimal = self.latitude is not None and self.longitude is not None
        if not has_decimal and not self.dms:
            raise ValueError("Provide latitude/longitude or a DMS coordinate.")
        return self


class LocationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    address: str | None = Field(default=None, min_length=1, max_length=500)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    dms: str | None = Field(default=None, max_length=64)
    radius_m: int | None = Field(default=None, ge=10, le=1000)
    is_active: bool | None = None

    @model_validator(mode="after")
    def _validate_coordinates(self) -> "LocationUpdate":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Provide latitude and longitude together.")
        if self.latitude is not None and self.dms:
            raise ValueError("Provide latitude/longitude or a DMS coordinate, not both.")
        return self


class LocationRead(BaseModel):
    id: int
    name: str
    address: str
    lat: float
    lon: float
    radius_m: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class AttendanceDashboardRecord(BaseModel):
    attendance: AttendanceRead
    employee_name: str
    position: str | None = None


class AttendanceDashboardResponse(BaseModel):
    date: date
    total_employees: int
    present: int
    late: int
    absent: int
    attendance: list[AttendanceDashboardRecord]


class AttendanceDaySummary(BaseModel):
    date: date
    present: int
    late: int
    absent: int
    excused: int


class AttendanceSummaryResponse(BaseModel):
    start_date: date
    end_date: date
    total_employees: int
    days: list[AttendanceDaySummary]

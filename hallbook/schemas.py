"""Pydantic schemas shared across the microservices."""
from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_serializer

from .models import BookingStatus, EmailFrequency, NotificationType, RegistrationStatus, RoleEnum


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    expires_at: datetime


class UserBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)
    employee_id: Optional[str] = Field(None, max_length=50)
    department: Optional[str] = Field(None, max_length=100)


class UserCreate(UserBase):
    password: str = Field(..., min_length=8)
    role: RoleEnum = RoleEnum.FACULTY


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    employee_id: Optional[str] = Field(None, max_length=50)
    department: Optional[str] = Field(None, max_length=100)


class UserRead(UserBase):
    id: int
    role: RoleEnum
    is_active: bool
    registration_status: RegistrationStatus
    approved_by_admin: bool
    rejected_reason: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UserPage(BaseModel):
    items: List[UserRead]
    total: int
    page: int
    page_size: int


class RoleUpdate(BaseModel):
    role: RoleEnum


class StatusUpdate(BaseModel):
    is_active: bool


class RegistrationRejection(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ActivityRead(BaseModel):
    id: int
    actor_id: Optional[int] = None
    action: str
    target_type: str
    target_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ActivityPage(BaseModel):
    items: List[ActivityRead]
    total: int
    page: int
    page_size: int


class HallBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    capacity: int = Field(..., ge=1)
    location: str = Field(..., min_length=1, max_length=255)
    building: Optional[str] = Field(None, max_length=100)
    floor_number: Optional[int] = None
    equipment: List[str] = Field(default_factory=list)
    amenities: List[str] = Field(default_factory=list)


class HallCreate(HallBase):
    pass


class HallUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    capacity: Optional[int] = Field(None, ge=1)
    location: Optional[str] = Field(None, min_length=1, max_length=255)
    building: Optional[str] = None
    floor_number: Optional[int] = None
    equipment: Optional[List[str]] = None
    amenities: Optional[List[str]] = None
    is_active: Optional[bool] = None


class MaintenanceToggle(BaseModel):
    is_maintenance: bool
    maintenance_notes: Optional[str] = None


class HallRead(HallBase):
    id: int
    is_active: bool
    is_maintenance: bool
    maintenance_notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MaintenanceWindowCreate(BaseModel):
    window_date: str
    start_time: str
    end_time: str
    description: str = ""


class MaintenanceWindowRead(BaseModel):
    id: int
    hall_id: int
    window_date: date
    start_time: time
    end_time: time
    description: str

    model_config = {"from_attributes": True}

    @field_serializer("start_time", "end_time")
    def serialize_clock(self, value: time) -> str:
        return value.strftime("%H:%M")


class BookingCreate(BaseModel):
    hall_id: int
    # plain strings: YYYY-MM-DD / DDMMYYYY and HH:MM are parsed by the domain
    booking_date: str
    start_time: str
    end_time: str
    purpose: str = Field(..., max_length=255)
    description: Optional[str] = None
    attendees_count: int
    equipment_needed: List[str] = Field(default_factory=list)
    special_requirements: Optional[str] = None


class BookingUpdate(BaseModel):
    booking_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    purpose: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    attendees_count: Optional[int] = None
    equipment_needed: Optional[List[str]] = None
    special_requirements: Optional[str] = None


class BookingRead(BaseModel):
    id: int
    hall_id: int
    user_id: Optional[int] = None
    booking_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    purpose: str
    description: Optional[str] = None
    attendees_count: int
    equipment_needed: List[str]
    special_requirements: Optional[str] = None
    status: BookingStatus
    rejected_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[int] = None
    admin_notes: Optional[str] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    rating: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_serializer("start_time", "end_time")
    def serialize_clock(self, value: time) -> str:
        return value.strftime("%H:%M")


class BookingCreated(BookingRead):
    conflict_warning: Optional[Dict[str, Any]] = None


class BookingPage(BaseModel):
    items: List[BookingRead]
    total: int
    page: int
    page_size: int


class BookingApproval(BaseModel):
    admin_notes: Optional[str] = Field(None, max_length=1000)


class BookingRejection(BaseModel):
    reason: str = Field(..., max_length=1000)


class BookingCancellation(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingRating(BaseModel):
    rating: int = Field(..., ge=1, le=5)


class UserBookingStats(BaseModel):
    total_bookings: int
    this_month_bookings: int
    approved_bookings: int
    pending_bookings: int
    completed_bookings: int
    average_rating: float


class SlotRead(BaseModel):
    start_time: str
    end_time: str
    available: bool = True
    conflicting_booking_ids: List[int] = Field(default_factory=list)


class NotificationRead(BaseModel):
    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationPage(BaseModel):
    items: List[NotificationRead]
    total: int
    page: int
    page_size: int


class UnreadCount(BaseModel):
    unread_count: int


class MarkRead(BaseModel):
    notification_ids: List[int] = Field(..., min_length=1)


class UpdatedCount(BaseModel):
    updated: int


class NotificationSettingsRead(BaseModel):
    push_enabled: bool
    email_enabled: bool
    email_frequency: EmailFrequency
    booking_updates: bool
    reminders: bool
    reminder_time_minutes: int
    maintenance_alerts: bool
    system_announcements: bool

    model_config = {"from_attributes": True}


class NotificationSettingsUpdate(BaseModel):
    push_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    email_frequency: Optional[EmailFrequency] = None
    booking_updates: Optional[bool] = None
    reminders: Optional[bool] = None
    reminder_time_minutes: Optional[int] = None
    maintenance_alerts: Optional[bool] = None
    system_announcements: Optional[bool] = None


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    type: NotificationType = NotificationType.SYSTEM
    role: Optional[RoleEnum] = None


class AnnouncementResult(BaseModel):
    recipients: int

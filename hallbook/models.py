"""SQLAlchemy models shared across all services."""
from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .dates import utcnow


class RoleEnum(str, Enum):
    FACULTY = "faculty"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    BOOKING = "booking"
    REJECTION = "rejection"
    CANCELLATION = "cancellation"
    REMINDER = "reminder"
    UPDATE = "update"
    SYSTEM = "system"
    MAINTENANCE = "maintenance"


class EmailFrequency(str, Enum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(30), default=None)
    employee_id: Mapped[Optional[str]] = mapped_column(String(50), default=None)
    department: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    role: Mapped[RoleEnum] = mapped_column(SqlEnum(RoleEnum), default=RoleEnum.FACULTY, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    registration_status: Mapped[RegistrationStatus] = mapped_column(
        SqlEnum(RegistrationStatus), default=RegistrationStatus.PENDING, index=True
    )
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="user", foreign_keys="Booking.user_id")

    @property
    def approved_by_admin(self) -> bool:
        return self.registration_status == RegistrationStatus.APPROVED


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)


class Hall(Base):
    __tablename__ = "halls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    capacity: Mapped[int] = mapped_column(Integer, index=True)
    location: Mapped[str] = mapped_column(String(255), index=True)
    building: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    floor_number: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    equipment: Mapped[list[str]] = mapped_column(JSON, default=list)
    amenities: Mapped[list[str]] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_maintenance: Mapped[bool] = mapped_column(Boolean, default=False)
    maintenance_notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    # bumped by every approval so concurrent approvals in one hall serialize at commit
    schedule_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="hall")
    maintenance_windows: Mapped[List["MaintenanceWindow"]] = relationship(back_populates="hall")


class MaintenanceWindow(Base):
    __tablename__ = "maintenance_windows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    hall_id: Mapped[int] = mapped_column(ForeignKey("halls.id", ondelete="CASCADE"), index=True)
    window_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    hall: Mapped[Hall] = relationship(back_populates="maintenance_windows")


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    hall_id: Mapped[int] = mapped_column(ForeignKey("halls.id"), index=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), index=True)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    purpose: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, default=None)
    attendees_count: Mapped[int] = mapped_column(Integer)
    equipment_needed: Mapped[list[str]] = mapped_column(JSON, default=list)
    special_requirements: Mapped[Optional[str]] = mapped_column(Text, default=None)
    status: Mapped[BookingStatus] = mapped_column(
        SqlEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False, index=True
    )
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    cancelled_by: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    approved_by: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    rating: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped[Optional[User]] = relationship(back_populates="bookings", foreign_keys=[user_id])
    hall: Mapped[Hall] = relationship(back_populates="bookings")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    type: Mapped[NotificationType] = mapped_column(SqlEnum(NotificationType))
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, default=None)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    email_frequency: Mapped[EmailFrequency] = mapped_column(SqlEnum(EmailFrequency), default=EmailFrequency.IMMEDIATE)
    booking_updates: Mapped[bool] = mapped_column(Boolean, default=True)
    reminders: Mapped[bool] = mapped_column(Boolean, default=True)
    reminder_time_minutes: Mapped[int] = mapped_column(Integer, default=60)
    maintenance_alerts: Mapped[bool] = mapped_column(Boolean, default=True)
    system_announcements: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, default=None, index=True)
    action: Mapped[str] = mapped_column(String(100))
    target_type: Mapped[str] = mapped_column(String(30))
    target_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

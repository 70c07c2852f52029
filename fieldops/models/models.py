import uuid
from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always binds and returns timezone-aware UTC values (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Uuid(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

# Association table for many-to-many Intervention<->User (assigned agents)
intervention_agents = Table(
    "intervention_agents",
    Base.metadata,
    Column("intervention_id", Uuid(as_uuid=True), ForeignKey("interventions.id", ondelete="CASCADE"), primary_key=True),
    Column("agent_id", Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True),
    UniqueConstraint("intervention_id", "agent_id", name="uq_intervention_agent"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # super_admin|admin|supervisor|agent|client
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    """Identity record as resolved from the identity service."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users", lazy="selectin")
    profile = relationship("EmployeeProfile", uselist=False, foreign_keys="EmployeeProfile.user_id", lazy="selectin")


class EmployeeProfile(Base):
    __tablename__ = "employee_profiles"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    preferred_name: Mapped[Optional[str]] = mapped_column(String(100))
    # Supervisor who receives auto clock-out alerts
    manager_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))


class Site(Base):
    """Registered cleaning site, as published by the site directory."""
    __tablename__ = "sites"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Latitude for GPS checkpoints
    lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Longitude for GPS checkpoints
    radius_m: Mapped[Optional[int]] = mapped_column(Integer)  # Acceptable radius, default GEO_RADIUS_M_DEFAULT
    timezone: Mapped[Optional[str]] = mapped_column(String(64))  # Local timezone, default TZ_DEFAULT


class Intervention(Base):
    """One scheduled cleaning job at a site"""
    __tablename__ = "interventions"

    id: Mapped[uuid.UUID] = uuid_pk()
    intervention_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    contract_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), index=True)  # Owned by the contracts module
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sites.id"), nullable=False, index=True)

    scheduled_date = mapped_column(Date, nullable=False)  # Site-local date
    scheduled_start_time = mapped_column(Time(timezone=False), nullable=False)  # Site-local time
    scheduled_end_time = mapped_column(Time(timezone=False), nullable=False)  # Site-local time
    actual_start_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    actual_end_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="SCHEDULED", index=True)  # SCHEDULED|IN_PROGRESS|COMPLETED|CANCELLED|RESCHEDULED

    assigned_team_chief_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    assigned_zone_chief_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))

    # GPS checkpoints
    gps_check_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    gps_check_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    gps_check_in_accuracy_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    gps_check_in_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    gps_check_out_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    gps_check_out_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    gps_check_out_accuracy_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    gps_check_out_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Append-only execution data
    photo_urls: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    quality_score: Mapped[Optional[int]] = mapped_column(Integer)
    client_rating: Mapped[Optional[int]] = mapped_column(Integer)
    client_feedback: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # History
    rescheduled_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("interventions.id"), index=True)
    reschedule_reason: Mapped[Optional[str]] = mapped_column(Text)
    started_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    archived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())  # Soft delete
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    site = relationship("Site", lazy="joined")
    agents: Mapped[List["User"]] = relationship("User", secondary=intervention_agents, lazy="selectin")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_interventions_date_status', 'scheduled_date', 'status'),
    )

    @property
    def assigned_agent_ids(self) -> List[uuid.UUID]:
        return [a.id for a in self.agents]

    @property
    def has_checkpoint(self) -> bool:
        return self.gps_check_in_time is not None or self.gps_check_out_time is not None


class Shift(Base):
    """Attendance record: one work session for one agent, possibly with breaks"""
    __tablename__ = "shifts"

    id: Mapped[uuid.UUID] = uuid_pk()
    agent_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # active|paused|completed
    clock_in: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    clock_out: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_heartbeat: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    device_id: Mapped[Optional[str]] = mapped_column(String(255))
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # Closed breaks only
    hours_worked: Mapped[Optional[float]] = mapped_column(Numeric(5, 2))  # Set on close, net of breaks
    forced_clock_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)  # Closed by the idle monitor
    clock_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    breaks: Mapped[List["ShiftBreak"]] = relationship(
        "ShiftBreak",
        back_populates="shift",
        order_by="ShiftBreak.break_start",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_shifts_agent_clock_in', 'agent_id', 'clock_in'),
        Index('idx_shifts_status_heartbeat', 'status', 'last_heartbeat'),
        # One open shift per agent
        Index(
            'uq_shifts_agent_open',
            'agent_id',
            unique=True,
            sqlite_where=text("status != 'completed'"),
            postgresql_where=text("status != 'completed'"),
        ),
    )

    @property
    def open_break(self) -> Optional["ShiftBreak"]:
        for b in self.breaks:
            if b.break_end is None:
                return b
        return None


class ShiftBreak(Base):
    """Break period within a shift"""
    __tablename__ = "shift_breaks"

    id: Mapped[uuid.UUID] = uuid_pk()
    shift_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    break_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    break_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    break_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")  # manual|idle|system
    reason: Mapped[Optional[str]] = mapped_column(String(20))  # break|lunch|meeting|personal|other
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    shift = relationship("Shift", back_populates="breaks")


class Notification(Base):
    """Outbox rows for the notification sink; delivery happens elsewhere"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # push|email
    template_key: Mapped[Optional[str]] = mapped_column(String(100))  # e.g. auto_clock_out, intervention_started
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed|delivered
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    __table_args__ = (
        Index('idx_notifications_user_status', 'user_id', 'status'),
        Index('idx_notifications_created', 'created_at'),
    )

"""
Database Models for the Redirect & Tracking Service

This module defines the SQLModel database schemas for:
- User, Link, DynamicLink, WebhookEndpoint: owned by other services, read here
- UserDevice: fingerprinted client identity (upserted by tracking)
- TrackingSession: sliding activity window per device
- ClickEvent / DynamicLinkClickEvent / Visit: append-only analytics rows

Design Decisions:
- Event tables share one column set (EventFieldsBase) so the recorder can
  build every kind of event from the same derived fields
- click_count denormalized on links; approximate, the event tables are the
  source of truth
- UserDevice uniqueness uses non-null key columns ("anonymous" marker)
  because SQL unique constraints treat NULLs as distinct
- One open session per device is enforced by a partial unique index
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import IntEnum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

ANONYMOUS_KEY = "anonymous"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RedirectType(IntEnum):
    PERMANENT = 301
    TEMPORARY = 302


class LinkKind:
    STANDARD = "link"
    DYNAMIC = "dynamic_link"


class User(SQLModel, table=True):
    """
    Account table (owned by the account service).

    Only the columns needed for attribution are mapped here.
    """
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, sa_column=Column(String(36), primary_key=True))
    email: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    first_name: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    last_name: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Link(SQLModel, table=True):
    """
    Short link mapping (created by the link management service).

    Fields used by the redirect path:
    - alias: unique short path segment (most critical lookup)
    - is_active / expires_at / deleted_at: resolvability
    - redirect_type: 301 or 302
    - click_count: approximate aggregate, atomically incremented
    """
    __tablename__ = "links"

    id: str = Field(default_factory=new_id, sa_column=Column(String(36), primary_key=True))
    alias: str = Field(sa_column=Column(String(64), nullable=False, unique=True, index=True))
    original_url: str = Field(sa_column=Column(Text, nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True, index=True))
    redirect_type: int = Field(
        default=RedirectType.TEMPORARY.value,
        sa_column=Column(Integer, nullable=False, default=RedirectType.TEMPORARY.value)
    )
    expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True)
    )
    click_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    user_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class DynamicLink(SQLModel, table=True):
    """
    Platform-aware link: the target depends on the visitor's OS.

    rules: [{"platform": "ios" | "android" | "web", "url": "...",
             "minimum_version": "14.0"}]
    """
    __tablename__ = "dynamic_links"

    id: str = Field(default_factory=new_id, sa_column=Column(String(36), primary_key=True))
    name: str = Field(sa_column=Column(String(255), nullable=False))
    alias: str = Field(sa_column=Column(String(64), nullable=False, unique=True, index=True))
    default_url: str = Field(sa_column=Column(Text, nullable=False))
    rules: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    click_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    user_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class UserDevice(SQLModel, table=True):
    """
    Fingerprinted device, optionally associated with a user.

    Identity: (device_id, user_key, client_device_key). The key columns hold
    the user id / client-supplied device id, or ANONYMOUS_KEY when absent.
    """
    __tablename__ = "user_devices"
    __table_args__ = (
        UniqueConstraint("device_id", "user_key", "client_device_key", name="uq_user_devices_identity"),
    )

    id: str = Field(default_factory=new_id, sa_column=Column(String(36), primary_key=True))
    device_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    x_device_id: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True, index=True))
    user_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    )
    user_key: str = Field(default=ANONYMOUS_KEY, sa_column=Column(String(36), nullable=False))
    client_device_key: str = Field(default=ANONYMOUS_KEY, sa_column=Column(String(255), nullable=False))

    x_device_memory: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))
    x_hardware_concurrency: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    x_platform: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    x_screen_width: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    x_screen_height: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    x_color_depth: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    x_time_zone: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    fingerprint_hash: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    browser: Optional[str] = Field(default=None, sa_column=Column(String(100), nullable=True))
    device_type: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class TrackingSession(SQLModel, table=True):
    """
    A sliding window of activity for one device.

    Open while ended_at is NULL; at most one open session per device.
    duration_seconds is set once the session is closed.
    """
    __tablename__ = "tracking_sessions"
    __table_args__ = (
        Index(
            "uq_tracking_sessions_open_per_device",
            "user_device_id",
            unique=True,
            sqlite_where=text("ended_at IS NULL"),
            postgresql_where=text("ended_at IS NULL"),
        ),
    )

    id: str = Field(default_factory=new_id, sa_column=Column(String(36), primary_key=True))
    user_device_id: str = Field(
        sa_column=Column(String(36), ForeignKey("user_devices.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    user_id: Optional[str] = Field(default=None, sa_column=Column(String(36), nullable=True, index=True))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_event_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
    ended_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    duration_seconds: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    event_count: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))


class EventFieldsBase(SQLModel):
    """Columns shared by every analytics event table."""

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    user_id: Optional[str] = Field(default=None, max_length=36, index=True)
    user_device_id: Optional[str] = Field(default=None, max_length=36, index=True)
    device_id: Optional[str] = Field(default=None, max_length=64, index=True)
    session_id: Optional[str] = Field(default=None, max_length=36, index=True)

    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, sa_type=Text)
    referer: Optional[str] = Field(default=None, sa_type=Text)
    referrer_domain: Optional[str] = Field(default=None, max_length=255)

    browser: Optional[str] = Field(default=None, max_length=100)
    browser_version: Optional[str] = Field(default=None, max_length=50)
    os: Optional[str] = Field(default=None, max_length=100)
    os_version: Optional[str] = Field(default=None, max_length=50)
    device: Optional[str] = Field(default=None, max_length=100)
    device_type: Optional[str] = Field(default=None, max_length=20)

    geo_country: Optional[str] = Field(default=None, max_length=100)
    geo_city: Optional[str] = Field(default=None, max_length=100)
    geo_latitude: Optional[Decimal] = Field(default=None, sa_type=Numeric(9, 6))
    geo_longitude: Optional[Decimal] = Field(default=None, sa_type=Numeric(9, 6))

    cf_ray: Optional[str] = Field(default=None, max_length=100)
    cf_ip_country: Optional[str] = Field(default=None, max_length=10)
    host: Optional[str] = Field(default=None, max_length=255)
    request_id: Optional[str] = Field(default=None, max_length=100)
    accept_language: Optional[str] = Field(default=None, max_length=255)
    x_platform: Optional[str] = Field(default=None, max_length=100)
    x_time_zone: Optional[str] = Field(default=None, max_length=100)
    x_screen_width: Optional[int] = Field(default=None)
    x_screen_height: Optional[int] = Field(default=None)
    x_device_memory: Optional[float] = Field(default=None)
    x_color_depth: Optional[int] = Field(default=None)
    x_device_id: Optional[str] = Field(default=None, max_length=255)

    utm_source: Optional[str] = Field(default=None, max_length=100)
    utm_medium: Optional[str] = Field(default=None, max_length=100)
    utm_campaign: Optional[str] = Field(default=None, max_length=100)
    utm_term: Optional[str] = Field(default=None, max_length=100)
    utm_content: Optional[str] = Field(default=None, max_length=100)
    query_params: Optional[dict[str, Any]] = Field(default=None, sa_type=JSON)

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )


class ClickFieldsBase(EventFieldsBase):
    """Columns shared by click tables (conversion data is written by other services)."""

    status_code: Optional[int] = Field(default=None)
    conversion_type: Optional[str] = Field(default=None, max_length=50)
    conversion_value: Optional[Decimal] = Field(default=None, sa_type=Numeric(10, 2))


class ClickEvent(ClickFieldsBase, table=True):
    """One resolution of a standard link. Append-only."""
    __tablename__ = "click_events"

    link_id: str = Field(foreign_key="links.id", ondelete="CASCADE", index=True, max_length=36)


class DynamicLinkClickEvent(ClickFieldsBase, table=True):
    """One resolution of a dynamic link. Append-only."""
    __tablename__ = "dynamic_link_click_events"

    dynamic_link_id: str = Field(foreign_key="dynamic_links.id", ondelete="CASCADE", index=True, max_length=36)


class Visit(EventFieldsBase, table=True):
    """One tracked request to a non-redirect route. Append-only."""
    __tablename__ = "visits"

    path: Optional[str] = Field(default=None, max_length=2048)
    method: Optional[str] = Field(default=None, max_length=10)


class WebhookEndpoint(SQLModel, table=True):
    """
    Webhook registration (managed by the webhooks service).

    events: list of event names, e.g. ["link.clicked"]
    """
    __tablename__ = "webhook_endpoints"

    id: str = Field(default_factory=new_id, sa_column=Column(String(36), primary_key=True))
    user_id: str = Field(
        sa_column=Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    url: str = Field(sa_column=Column(Text, nullable=False))
    events: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    secret: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    failed_attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    last_failed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )

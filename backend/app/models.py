from __future__ import annotations

import datetime as dt

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50))
    # Optional: Google accounts always have one, phone sign-ups may not.
    email: Mapped[str | None] = mapped_column(String(255), unique=True, index=True, nullable=True)
    city: Mapped[str] = mapped_column(String(120), default="")
    # bcrypt hash; empty for phone/google accounts.
    password_hash: Mapped[str] = mapped_column(String(255), default="")
    role: Mapped[str] = mapped_column(String(20), default="guest")  # guest | host | admin
    profile_photo: Mapped[str] = mapped_column(String(512), default="")  # Cloudinary URL

    # Normalized international format, e.g. +919876543210.
    phone: Mapped[str | None] = mapped_column(String(20), unique=True, index=True, nullable=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Tier and monthly quota counters (reset lazily on access).
    account_type: Mapped[str] = mapped_column(String(20), default="free")  # free | premium
    contact_views_used: Mapped[int] = mapped_column(Integer, default=0)
    contact_views_reset_date: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=_utcnow)
    properties_listed_this_month: Mapped[int] = mapped_column(Integer, default=0)
    properties_listed_reset_date: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=_utcnow)

    google_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True, nullable=True)
    auth_provider: Mapped[str] = mapped_column(String(20), default="phone")  # local | phone | google

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    properties = relationship("Property", back_populates="host")


class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    host_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    title: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, default="")
    city: Mapped[str] = mapped_column(String(120), default="", index=True)
    address: Mapped[str] = mapped_column(String(512), default="")

    rent_type: Mapped[str] = mapped_column(String(20))  # per_person | entire_property
    rent_amount: Mapped[int] = mapped_column(Integer)
    # Legacy price column; mirrors rent_amount for older clients.
    price: Mapped[int] = mapped_column(Integer, default=0, index=True)

    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    bedrooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_guests: Mapped[int] = mapped_column(Integer, default=1, index=True)

    amenities_json: Mapped[str] = mapped_column(Text, default="[]")  # JSON-encoded list of strings
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)

    # Analytics
    views: Mapped[int] = mapped_column(Integer, default=0)
    likes: Mapped[int] = mapped_column(Integer, default=0)
    contact_requests: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    host = relationship("User", back_populates="properties")
    images = relationship(
        "PropertyImage",
        back_populates="property",
        cascade="all, delete-orphan",
        order_by="PropertyImage.sort_order",
    )
    view_days = relationship("PropertyViewDay", cascade="all, delete-orphan")
    liked_by = relationship("PropertyLike", cascade="all, delete-orphan")


class PropertyImage(Base):
    __tablename__ = "property_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), index=True)
    url: Mapped[str] = mapped_column(String(512))
    # Cloudinary public_id for cleanup (optional for URLs from elsewhere).
    cloudinary_public_id: Mapped[str] = mapped_column(String(255), default="")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    property = relationship("Property", back_populates="images")


class PropertyViewDay(Base):
    __tablename__ = "property_view_days"
    __table_args__ = (UniqueConstraint("property_id", "day", name="uq_view_day_property_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), index=True)
    day: Mapped[dt.date] = mapped_column(Date, index=True)
    count: Mapped[int] = mapped_column(Integer, default=0)


class PropertyLike(Base):
    __tablename__ = "property_likes"
    __table_args__ = (UniqueConstraint("user_id", "property_id", name="uq_like_user_property"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    property_id: Mapped[int] = mapped_column(ForeignKey("properties.id"), index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PaymentOrder(Base):
    """
    Razorpay orders created for premium upgrades.

    Lets /api/payment/verify check that the order belongs to the caller.
    """

    __tablename__ = "payment_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    order_id: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    amount: Mapped[int] = mapped_column(Integer)  # paise
    currency: Mapped[str] = mapped_column(String(8), default="INR")
    status: Mapped[str] = mapped_column(String(20), default="created")  # created | paid
    payment_id: Mapped[str] = mapped_column(String(80), default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

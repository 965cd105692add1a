from __future__ import annotations

import datetime as dt
import json
import logging
import re
import time
from typing import Annotated, Any

from fastapi import Body, Cookie, Depends, FastAPI, File, Header, HTTPException, Query, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import delete, or_, select, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.config import (
    allowed_hosts,
    cors_origins,
    enforce_secure_secrets,
    is_production,
    jwt_expire_days,
    max_property_images,
    max_upload_image_bytes,
    otp_sweep_interval_seconds,
    premium_price_paise,
    razorpay_key_id,
)
from app.db import session_scope
from app.google_auth import GoogleAuthError, GoogleAuthNotConfigured, verify_google_token
from app.models import PaymentOrder, Property, PropertyImage, PropertyLike, PropertyViewDay, User
from app.otp import CodeNotFound, InvalidFormat, OtpError, OtpGatekeeper, normalize_phone
from app.payments import PaymentError, PaymentsNotConfigured, create_order, verify_payment_signature
from app.quota import LimitReached, QuotaKind, QuotaTracker, limits_for, quota_tracker, upgrade_to_host
from app.rate_limit import limiter
from app.security import create_access_token, decode_access_token, hash_password, verify_password
from app.sweeper import OtpSweeper
from app.utils.cloudinary_storage import (
    MediaUploadError,
    cloudinary_enabled,
    destroy as cloudinary_destroy,
    is_allowed_image,
    public_id_from_url,
    upload_image as cloudinary_upload_image,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="UrbanStay API")

# Production hardening: ensure we don't run with dangerous defaults.
enforce_secure_secrets()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts())


@app.middleware("http")
async def _security_headers(request, call_next):
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    # The web client authenticates with the `token` cookie.
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


otp_gatekeeper = OtpGatekeeper.from_config()
otp_sweeper = OtpSweeper(otp_gatekeeper, interval_seconds=otp_sweep_interval_seconds())

RENT_TYPES = {"per_person", "entire_property"}
MIN_RENT_AMOUNT = 500
_EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")


@app.on_event("startup")
async def start_otp_sweeper() -> None:
    otp_sweeper.start()


@app.on_event("shutdown")
async def stop_otp_sweeper() -> None:
    await otp_sweeper.stop()


# -----------------------
# Error envelope
# -----------------------
def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


@app.exception_handler(StarletteHTTPException)
async def http_error(request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail or "Server Error"))


@app.exception_handler(RequestValidationError)
async def validation_error(request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()) if x != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return _error(400, ", ".join(parts) or "Invalid request")


@app.exception_handler(OtpError)
async def otp_error(request, exc: OtpError):
    return _error(exc.status_code, str(exc), **exc.extra())


@app.exception_handler(LimitReached)
async def limit_reached(request, exc: LimitReached):
    return _error(
        403,
        str(exc),
        limit_reached=True,
        account_type=exc.account_type,
        limit=exc.limit,
        used=exc.used,
    )


# -----------------------
# Dependencies
# -----------------------
def get_db():
    with session_scope() as db:
        yield db


def get_otp_gatekeeper() -> OtpGatekeeper:
    return otp_gatekeeper


def get_quota_tracker() -> QuotaTracker:
    return quota_tracker


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def get_current_user(
    db: Annotated[Session, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
    token: Annotated[str | None, Cookie()] = None,
) -> User:
    # Bearer header (mobile apps, tools) wins over the web client's cookie.
    raw = _bearer_token(authorization) or (token or "").strip()
    if not raw:
        raise HTTPException(status_code=401, detail="Not authorized to access this route")
    try:
        payload = decode_access_token(raw)
        user_id = int(payload.get("sub") or 0)
    except Exception:
        raise HTTPException(status_code=401, detail="Not authorized to access this route")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _require_role(me: User, *roles: str) -> None:
    if me.role == "admin":
        return
    if me.role not in roles:
        raise HTTPException(status_code=403, detail=f"User role '{me.role}' is not authorized to access this route")


def _user_out(u: User) -> dict[str, Any]:
    limits = limits_for(u.account_type)
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "city": u.city,
        "role": u.role,
        "profile_photo": u.profile_photo,
        "phone": u.phone,
        "phone_verified": bool(u.phone_verified),
        "auth_provider": u.auth_provider,
        "account_type": u.account_type,
        "contact_views_used": int(u.contact_views_used or 0),
        "properties_listed_this_month": int(u.properties_listed_this_month or 0),
        "limits": {"contact_views": limits.contact_views, "listings": limits.listings},
        "created_at": u.created_at,
    }


def _issue_token(response: Response, user: User) -> dict[str, Any]:
    token = create_access_token(user_id=user.id, role=user.role, email=user.email)
    response.set_cookie(
        "token",
        token,
        max_age=jwt_expire_days() * 24 * 60 * 60,
        httponly=True,
        secure=is_production(),
        samesite="strict",
    )
    # Also sent in the body for mobile apps.
    return {"success": True, "token": token, "user": _user_out(user)}


# -----------------------
# Schemas
# -----------------------
class RegisterIn(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    email: str
    password: str = Field(min_length=6)
    city: str = Field(min_length=1)
    phone: str = ""
    role: str = "guest"  # guest | host


class LoginIn(BaseModel):
    email: str
    password: str


class MeUpdateIn(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    city: str | None = None
    profile_photo: str | None = None


class OtpSendIn(BaseModel):
    phone: str


class OtpVerifyIn(BaseModel):
    phone: str
    code: str = Field(min_length=1, max_length=12)
    # Only needed the first time a phone signs in.
    name: str = ""
    city: str = ""


class GoogleLoginIn(BaseModel):
    id_token: str
    city: str = ""


class CoordinatesIn(BaseModel):
    latitude: float | None = None
    longitude: float | None = None


class PropertyCreateIn(BaseModel):
    title: str = Field(min_length=10, max_length=100)
    description: str = Field(min_length=50, max_length=2000)
    city: str = Field(min_length=1)
    address: str = ""
    rent_type: str = ""
    rent_amount: int | None = None
    coordinates: CoordinatesIn | None = None
    max_guests: int = Field(ge=1, le=20)
    bedrooms: int | None = Field(default=None, ge=0)
    amenities: list[str] = []
    images: list[str] = []
    is_available: bool = True


class PropertyUpdateIn(BaseModel):
    title: str | None = Field(default=None, min_length=10, max_length=100)
    description: str | None = Field(default=None, min_length=50, max_length=2000)
    city: str | None = None
    address: str | None = None
    rent_type: str | None = None
    rent_amount: int | None = None
    coordinates: CoordinatesIn | None = None
    max_guests: int | None = Field(default=None, ge=1, le=20)
    bedrooms: int | None = Field(default=None, ge=0)
    amenities: list[str] | None = None
    images: list[str] | None = None
    is_available: bool | None = None


class DeleteImageIn(BaseModel):
    public_id: str = ""


class PaymentVerifyIn(BaseModel):
    razorpay_order_id: str = ""
    razorpay_payment_id: str = ""
    razorpay_signature: str = ""


# -----------------------
# Health
# -----------------------
@app.get("/api/health")
def health():
    return {
        "success": True,
        "message": "UrbanStay API is running",
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
    }


# -----------------------
# Auth: email + password
# -----------------------
@app.post("/api/auth/register", status_code=201)
def register(data: RegisterIn, response: Response, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    if not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Please provide a valid email")
    role = (data.role or "guest").strip().lower()
    if role not in {"guest", "host"}:
        raise HTTPException(status_code=400, detail="Invalid role")
    phone = normalize_phone(data.phone) if (data.phone or "").strip() else None

    exists = db.execute(select(User.id).where(User.email == email)).first()
    if exists:
        raise HTTPException(status_code=400, detail="User already exists with this email")
    if phone and db.execute(select(User.id).where(User.phone == phone)).first():
        raise HTTPException(status_code=400, detail="phone already exists")

    user = User(
        name=data.name.strip(),
        email=email,
        city=data.city.strip(),
        password_hash=hash_password(data.password),
        role=role,
        phone=phone,
        auth_provider="local",
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent double-submits can still violate unique constraints.
        db.rollback()
        raise HTTPException(status_code=400, detail="User already exists with this email")
    return _issue_token(response, user)


@app.post("/api/auth/login")
def login(data: LoginIn, response: Response, db: Annotated[Session, Depends(get_db)]):
    email = data.email.strip().lower()
    if not email or not data.password:
        raise HTTPException(status_code=400, detail="Please provide email and password")
    limiter.hit(key=f"auth:login:{email}", limit=10, window_seconds=10 * 60, detail="Too many login attempts")

    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.auth_provider != "local":
        raise HTTPException(
            status_code=400,
            detail=f"This account uses {user.auth_provider} authentication. Please login with {user.auth_provider}.",
        )
    if not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _issue_token(response, user)


@app.post("/api/auth/logout")
def logout(response: Response, me: Annotated[User, Depends(get_current_user)]):
    response.delete_cookie("token")
    return {"success": True, "message": "Logged out successfully"}


@app.get("/api/auth/me")
def get_me(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    quota: Annotated[QuotaTracker, Depends(get_quota_tracker)],
):
    quota.refresh(db, me)
    return {"success": True, "user": _user_out(me)}


@app.put("/api/auth/me")
def update_me(
    data: MeUpdateIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    if data.name is not None:
        name = data.name.strip()
        if len(name) < 2:
            raise HTTPException(status_code=400, detail="Name must be at least 2 characters")
        if len(name) > 50:
            raise HTTPException(status_code=400, detail="Name cannot exceed 50 characters")
        me.name = name

    if data.email is not None:
        email = data.email.strip().lower()
        if not _EMAIL_RE.match(email):
            raise HTTPException(status_code=400, detail="Please provide a valid email")
        if email != (me.email or ""):
            taken = db.execute(select(User.id).where((User.email == email) & (User.id != me.id))).first()
            if taken:
                raise HTTPException(status_code=400, detail="Email is already in use by another account")
        me.email = email

    if data.phone is not None:
        phone = normalize_phone(data.phone) if data.phone.strip() else None
        if phone != me.phone:
            if phone and db.execute(select(User.id).where((User.phone == phone) & (User.id != me.id))).first():
                raise HTTPException(status_code=400, detail="Phone is already in use by another account")
            me.phone = phone
            # A changed number has to be verified again.
            me.phone_verified = False

    if data.city is not None:
        me.city = data.city.strip()

    if data.profile_photo is not None:
        me.profile_photo = data.profile_photo.strip()

    db.add(me)
    db.flush()
    return {"success": True, "message": "Profile updated successfully", "user": _user_out(me)}


# -----------------------
# Auth: phone OTP
# -----------------------
@app.post("/api/auth/otp/send")
def otp_send(
    data: OtpSendIn,
    gatekeeper: Annotated[OtpGatekeeper, Depends(get_otp_gatekeeper)],
):
    expires_in = gatekeeper.request_code(data.phone)
    return {"success": True, "message": "OTP sent successfully", "expires_in": expires_in}


@app.post("/api/auth/otp/verify")
def otp_verify(
    data: OtpVerifyIn,
    response: Response,
    db: Annotated[Session, Depends(get_db)],
    gatekeeper: Annotated[OtpGatekeeper, Depends(get_otp_gatekeeper)],
):
    try:
        phone = normalize_phone(data.phone)
    except InvalidFormat:
        # No code can exist for a malformed number.
        phone = data.phone
    # Same answer for registered and unknown numbers when no code is pending.
    if gatekeeper.get_record(phone) is None:
        raise CodeNotFound()
    user = db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
    name = (data.name or "").strip()
    city = (data.city or "").strip()
    # Check sign-up fields before the code is consumed.
    if not user and (len(name) < 2 or not city):
        raise HTTPException(status_code=400, detail="Name and city are required to create an account")

    gatekeeper.verify_code(phone, data.code)

    if not user:
        user = User(name=name[:50], city=city, phone=phone, phone_verified=True, auth_provider="phone")
        db.add(user)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=400, detail="phone already exists")
    else:
        user.phone_verified = True
        db.add(user)
        db.flush()
    return {"message": "OTP verified successfully", **_issue_token(response, user)}


# -----------------------
# Auth: Google Sign-In
# -----------------------
@app.post("/api/auth/google")
def auth_google(data: GoogleLoginIn, response: Response, db: Annotated[Session, Depends(get_db)]):
    try:
        identity = verify_google_token(data.id_token)
    except GoogleAuthNotConfigured as e:
        raise HTTPException(status_code=500, detail=str(e))
    except GoogleAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = None
    if identity.google_id:
        user = db.execute(select(User).where(User.google_id == identity.google_id)).scalar_one_or_none()
    if not user:
        user = db.execute(select(User).where(User.email == identity.email)).scalar_one_or_none()
        if user:
            # Link the Google identity to the existing account.
            user.google_id = identity.google_id or None
            if not user.profile_photo and identity.picture:
                user.profile_photo = identity.picture
            db.add(user)

    if not user:
        user = User(
            name=(identity.name or identity.email.split("@", 1)[0])[:50],
            email=identity.email,
            city=(data.city or "").strip(),
            google_id=identity.google_id or None,
            profile_photo=identity.picture,
            auth_provider="google",
        )
        db.add(user)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="User already exists")
    return _issue_token(response, user)


# -----------------------
# Properties
# -----------------------
def _amenities(p: Property) -> list[str]:
    try:
        items = json.loads(p.amenities_json or "[]")
    except ValueError:
        return []
    return [str(x) for x in items if str(x).strip()]


def _host_out(u: User | None) -> dict[str, Any] | None:
    if u is None:
        return None
    return {"id": u.id, "name": u.name, "email": u.email, "profile_photo": u.profile_photo}


def _property_out(p: Property, *, include_host: bool = True) -> dict[str, Any]:
    out = {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "location": {"city": p.city, "address": p.address},
        "rent_type": p.rent_type,
        "rent_amount": p.rent_amount,
        "price": p.price,
        "coordinates": {"latitude": p.latitude, "longitude": p.longitude},
        "bedrooms": p.bedrooms,
        "max_guests": p.max_guests,
        "amenities": _amenities(p),
        "images": [img.url for img in (p.images or [])],
        "host_id": p.host_id,
        "is_available": bool(p.is_available),
        "views": int(p.views or 0),
        "likes": int(p.likes or 0),
        "contact_requests": int(p.contact_requests or 0),
        "created_at": p.created_at,
        "updated_at": p.updated_at,
    }
    if include_host:
        out["host"] = _host_out(p.host)
    return out


def _validate_rent(rent_type: str | None, rent_amount: int | None, *, partial: bool) -> None:
    if rent_type is not None or not partial:
        if (rent_type or "") not in RENT_TYPES:
            raise HTTPException(status_code=400, detail="Rent type must be either 'per_person' or 'entire_property'")
    if rent_amount is not None or not partial:
        if rent_amount is None or int(rent_amount) < MIN_RENT_AMOUNT:
            raise HTTPException(status_code=400, detail=f"Rent amount must be at least ₹{MIN_RENT_AMOUNT} per month")


def _validate_coordinates(coords: CoordinatesIn | None, *, partial: bool) -> tuple[float | None, float | None]:
    if coords is None or coords.latitude is None or coords.longitude is None:
        if partial and (coords is None or (coords.latitude is None and coords.longitude is None)):
            return None, None
        raise HTTPException(status_code=400, detail="Location coordinates (latitude and longitude) are required")
    lat, lng = float(coords.latitude), float(coords.longitude)
    if not -90.0 <= lat <= 90.0:
        raise HTTPException(status_code=400, detail="Latitude must be between -90 and 90")
    if not -180.0 <= lng <= 180.0:
        raise HTTPException(status_code=400, detail="Longitude must be between -180 and 180")
    return lat, lng


def _set_images(p: Property, urls: list[str]) -> None:
    p.images = [
        PropertyImage(url=url.strip(), cloudinary_public_id=public_id_from_url(url), sort_order=i)
        for i, url in enumerate(u for u in urls if (u or "").strip())
    ]


def _get_property_or_404(db: Session, property_id: int) -> Property:
    p = db.get(Property, int(property_id))
    if not p:
        raise HTTPException(status_code=404, detail="Property not found")
    return p


def _require_owner(p: Property, me: User, action: str) -> None:
    if int(p.host_id) != int(me.id) and me.role != "admin":
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this property")


def _split_csv_values(v: str | None) -> list[str]:
    return [x.strip().lower() for x in (v or "").split(",") if x.strip()]


@app.get("/api/properties")
def list_properties(
    db: Annotated[Session, Depends(get_db)],
    city: str | None = Query(default=None),
    min_price: int | None = Query(default=None, ge=0),
    max_price: int | None = Query(default=None, ge=0),
    amenities: str | None = Query(default=None),
    bedrooms: int | None = Query(default=None, ge=0),
    guests: int | None = Query(default=None, ge=1),
    q: str | None = Query(default=None),
    sort_by: str | None = Query(default=None),
):
    stmt = select(Property).options(selectinload(Property.images), selectinload(Property.host))
    if city and city.strip():
        stmt = stmt.where(Property.city.ilike(f"%{city.strip()}%"))
    if min_price is not None:
        stmt = stmt.where(Property.rent_amount >= int(min_price))
    if max_price is not None:
        stmt = stmt.where(Property.rent_amount <= int(max_price))
    if bedrooms is not None:
        stmt = stmt.where(Property.bedrooms == int(bedrooms))
    if guests is not None:
        stmt = stmt.where(Property.max_guests >= int(guests))
    if q and q.strip():
        needle = f"%{q.strip()}%"
        stmt = stmt.where(or_(Property.title.ilike(needle), Property.description.ilike(needle)))

    if sort_by == "price_asc":
        stmt = stmt.order_by(Property.rent_amount.asc(), Property.id.desc())
    elif sort_by == "price_desc":
        stmt = stmt.order_by(Property.rent_amount.desc(), Property.id.desc())
    else:
        stmt = stmt.order_by(Property.created_at.desc(), Property.id.desc())

    items = db.execute(stmt).scalars().all()
    wanted = set(_split_csv_values(amenities))
    if wanted:
        # Amenities are stored as JSON text; match any.
        items = [p for p in items if wanted & {a.lower() for a in _amenities(p)}]
    data = [_property_out(p) for p in items]
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/properties/my")
def my_properties(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    stmt = (
        select(Property)
        .options(selectinload(Property.images))
        .where(Property.host_id == me.id)
        .order_by(Property.created_at.desc(), Property.id.desc())
    )
    data = [_property_out(p, include_host=False) for p in db.execute(stmt).scalars().all()]
    return {"success": True, "count": len(data), "data": data}


@app.get("/api/properties/user/{user_id:int}")
def user_properties(user_id: int, db: Annotated[Session, Depends(get_db)]):
    stmt = (
        select(Property)
        .options(selectinload(Property.images), selectinload(Property.host))
        .where(Property.host_id == int(user_id))
        .order_by(Property.created_at.desc(), Property.id.desc())
    )
    data = [_property_out(p) for p in db.execute(stmt).scalars().all()]
    return {"success": True, "count": len(data), "data": data}


@app.post("/api/properties", status_code=201)
def create_property(
    data: PropertyCreateIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    quota: Annotated[QuotaTracker, Depends(get_quota_tracker)],
):
    with quota.reserve(db, me, QuotaKind.LISTING) as remaining:
        _validate_rent(data.rent_type, data.rent_amount, partial=False)
        lat, lng = _validate_coordinates(data.coordinates, partial=False)

        # Guests become hosts by publishing.
        me.role = upgrade_to_host(me.role)
        db.add(me)

        p = Property(
            host_id=me.id,
            title=data.title.strip(),
            description=data.description.strip(),
            city=data.city.strip(),
            address=(data.address or "").strip(),
            rent_type=data.rent_type,
            rent_amount=int(data.rent_amount or 0),
            price=int(data.rent_amount or 0),
            latitude=lat,
            longitude=lng,
            bedrooms=data.bedrooms,
            max_guests=int(data.max_guests),
            amenities_json=json.dumps([a.strip() for a in data.amenities if a.strip()]),
            is_available=bool(data.is_available),
        )
        _set_images(p, data.images)
        db.add(p)
        db.flush()
    return {"success": True, "data": _property_out(p, include_host=False), "remaining_listings": remaining}


def _bump_view_day(db: Session, property_id: int, day: dt.date) -> bool:
    res = db.execute(
        sa_update(PropertyViewDay)
        .where((PropertyViewDay.property_id == property_id) & (PropertyViewDay.day == day))
        .values(count=PropertyViewDay.count + 1)
    )
    return bool(res.rowcount)


@app.get("/api/properties/{property_id:int}")
def get_property(property_id: int, db: Annotated[Session, Depends(get_db)]):
    p = _get_property_or_404(db, property_id)

    today = dt.datetime.now(dt.timezone.utc).date()
    db.execute(sa_update(Property).where(Property.id == p.id).values(views=Property.views + 1))
    if not _bump_view_day(db, p.id, today):
        try:
            with db.begin_nested():
                db.add(PropertyViewDay(property_id=p.id, day=today, count=1))
        except IntegrityError:
            # A concurrent first view of the day inserted the row first.
            _bump_view_day(db, p.id, today)
    db.flush()
    db.refresh(p)
    return {"success": True, "data": _property_out(p)}


@app.put("/api/properties/{property_id:int}")
def update_property(
    property_id: int,
    data: PropertyUpdateIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    _require_role(me, "host")
    p = _get_property_or_404(db, property_id)
    _require_owner(p, me, "update")

    _validate_rent(data.rent_type, data.rent_amount, partial=True)
    lat, lng = _validate_coordinates(data.coordinates, partial=True)

    fields = data.model_dump(exclude_unset=True)
    for name in ("title", "description", "city", "address", "rent_type", "bedrooms", "max_guests", "is_available"):
        if name in fields and fields[name] is not None:
            value = fields[name]
            setattr(p, name, value.strip() if isinstance(value, str) else value)
    if data.rent_amount is not None:
        p.rent_amount = int(data.rent_amount)
        p.price = int(data.rent_amount)
    if lat is not None:
        p.latitude, p.longitude = lat, lng
    if data.amenities is not None:
        p.amenities_json = json.dumps([a.strip() for a in data.amenities if a.strip()])
    if data.images is not None:
        _set_images(p, data.images)
    db.add(p)
    db.flush()
    return {"success": True, "data": _property_out(p)}


@app.delete("/api/properties/{property_id:int}")
def delete_property(
    property_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    _require_role(me, "host")
    p = _get_property_or_404(db, property_id)
    _require_owner(p, me, "delete")

    # Image cleanup never blocks the delete.
    for img in list(p.images or []):
        pid = (img.cloudinary_public_id or "").strip() or public_id_from_url(img.url)
        if not pid:
            continue
        try:
            cloudinary_destroy(public_id=pid)
        except Exception:
            logger.warning("Cloudinary cleanup failed property_id=%s public_id=%s", p.id, pid, exc_info=True)

    db.delete(p)
    db.flush()
    return {"success": True, "data": {}}


@app.get("/api/properties/{property_id:int}/contact")
def get_owner_contact(
    property_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    quota: Annotated[QuotaTracker, Depends(get_quota_tracker)],
):
    limiter.hit(key=f"contact:{me.id}", limit=60, window_seconds=60, detail="Too many contact requests")
    p = _get_property_or_404(db, property_id)
    host = db.get(User, int(p.host_id))
    if not host:
        raise HTTPException(status_code=404, detail="Owner information not available")

    remaining = quota.consume(db, me, QuotaKind.CONTACT_VIEW)
    db.execute(sa_update(Property).where(Property.id == p.id).values(contact_requests=Property.contact_requests + 1))

    limit = limits_for(me.account_type).contact_views
    return {
        "success": True,
        "data": {"owner_name": host.name, "owner_phone": host.phone},
        "remaining": remaining,
        "limit": limit,
        "used": limit - remaining,
        "account_type": me.account_type,
    }


@app.get("/api/properties/{property_id:int}/stats")
def get_property_stats(
    property_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    p = _get_property_or_404(db, property_id)
    if int(p.host_id) != int(me.id) and me.role != "admin":
        raise HTTPException(status_code=403, detail="Not authorized to view stats for this property")

    since = dt.datetime.now(dt.timezone.utc).date() - dt.timedelta(days=30)
    days = db.execute(
        select(PropertyViewDay)
        .where((PropertyViewDay.property_id == p.id) & (PropertyViewDay.day >= since))
        .order_by(PropertyViewDay.day.asc())
    ).scalars().all()
    return {
        "success": True,
        "data": {
            "title": p.title,
            "views": int(p.views or 0),
            "likes": int(p.likes or 0),
            "contact_requests": int(p.contact_requests or 0),
            "view_history": [{"date": d.day.isoformat(), "count": int(d.count or 0)} for d in days],
        },
    }


@app.post("/api/properties/{property_id:int}/like")
def toggle_like(
    property_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    p = _get_property_or_404(db, property_id)
    existing = db.execute(
        select(PropertyLike).where((PropertyLike.user_id == me.id) & (PropertyLike.property_id == p.id))
    ).scalar_one_or_none()
    if existing:
        db.delete(existing)
        p.likes = max(0, int(p.likes or 0) - 1)
        liked = False
    else:
        db.add(PropertyLike(user_id=me.id, property_id=p.id))
        p.likes = int(p.likes or 0) + 1
        liked = True
    db.add(p)
    db.flush()
    return {"success": True, "liked": liked, "likes": int(p.likes)}


@app.get("/api/properties/{property_id:int}/like-status")
def like_status(
    property_id: int,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    p = _get_property_or_404(db, property_id)
    liked = db.execute(
        select(PropertyLike.id).where((PropertyLike.user_id == me.id) & (PropertyLike.property_id == p.id))
    ).first()
    return {"success": True, "liked": bool(liked), "likes": int(p.likes or 0)}


# -----------------------
# Uploads (Cloudinary)
# -----------------------
def _read_image_upload(file: UploadFile) -> bytes:
    content_type = (file.content_type or "").lower()
    if not is_allowed_image(filename=file.filename or "", content_type=content_type):
        raise HTTPException(status_code=400, detail="Only image files are allowed (jpeg, jpg, png, webp)")
    raw = file.file.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty upload")
    if len(raw) > max_upload_image_bytes():
        raise HTTPException(status_code=413, detail=f"Upload too large (max {max_upload_image_bytes()} bytes)")
    return raw


def _require_media_hosting() -> None:
    if not cloudinary_enabled():
        raise HTTPException(status_code=503, detail="Image hosting is not configured")


@app.post("/api/upload/property-images")
def upload_property_images(
    me: Annotated[User, Depends(get_current_user)],
    images: list[UploadFile] = File(...),
):
    # Guests may upload: they become hosts when they publish.
    _require_role(me, "host", "guest")
    if not images:
        raise HTTPException(status_code=400, detail="Please upload at least one image")
    if len(images) > max_property_images():
        raise HTTPException(status_code=400, detail=f"You can upload at most {max_property_images()} images")
    _require_media_hosting()

    payloads = [_read_image_upload(f) for f in images]
    uploaded: list[dict[str, str]] = []
    for f, raw in zip(images, payloads):
        try:
            url, pid = cloudinary_upload_image(raw=raw, kind="properties")
        except MediaUploadError as e:
            raise HTTPException(status_code=400, detail=f"Image upload failed: {e}")
        except Exception as e:
            logger.exception("Cloudinary upload failed (property image) user_id=%s filename=%r", me.id, f.filename)
            raise HTTPException(status_code=500, detail=f"Image upload failed: {str(e)[:200]}")
        uploaded.append({"url": url, "public_id": pid})

    return {
        "success": True,
        "count": len(uploaded),
        "images": [x["url"] for x in uploaded],
        "image_data": uploaded,
    }


@app.post("/api/upload/profile-picture")
def upload_profile_picture(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    image: UploadFile = File(...),
):
    _require_media_hosting()
    raw = _read_image_upload(image)

    old_pid = public_id_from_url(me.profile_photo)
    if old_pid:
        try:
            cloudinary_destroy(public_id=old_pid)
        except Exception:
            logger.warning("Failed to delete old profile picture user_id=%s public_id=%s", me.id, old_pid, exc_info=True)

    try:
        url, pid = cloudinary_upload_image(raw=raw, kind="profiles", public_id=f"user_{me.id}_{int(time.time())}")
    except MediaUploadError as e:
        raise HTTPException(status_code=400, detail=f"Image upload failed: {e}")
    except Exception as e:
        logger.exception("Cloudinary upload failed (profile image) user_id=%s filename=%r", me.id, image.filename)
        raise HTTPException(status_code=500, detail=f"Image upload failed: {str(e)[:200]}")

    me.profile_photo = url
    db.add(me)
    return {"success": True, "image": url, "public_id": pid}


@app.delete("/api/upload/image")
def delete_uploaded_image(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    data: DeleteImageIn = Body(...),
):
    _require_role(me, "host")
    pid = (data.public_id or "").strip()
    if not pid:
        raise HTTPException(status_code=400, detail="Please provide image public ID")
    try:
        ok = cloudinary_destroy(public_id=pid)
    except Exception as e:
        logger.exception("Cloudinary destroy failed user_id=%s public_id=%s", me.id, pid)
        raise HTTPException(status_code=500, detail=f"Image deletion failed: {str(e)[:200]}")
    if not ok:
        raise HTTPException(status_code=500, detail="Image deletion failed")

    # Detach the image from the caller's listings.
    owned = select(Property.id).where(Property.host_id == me.id)
    db.execute(
        delete(PropertyImage).where((PropertyImage.cloudinary_public_id == pid) & (PropertyImage.property_id.in_(owned)))
    )
    return {"success": True, "message": "Image deleted successfully"}


# -----------------------
# Payments (Razorpay)
# -----------------------
@app.post("/api/payment/create-order")
def payment_create_order(
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    if (me.account_type or "free") == "premium":
        raise HTTPException(status_code=400, detail="You are already a Premium member")

    try:
        order = create_order(
            amount=premium_price_paise(),
            currency="INR",
            receipt=f"upgrade_{me.id}_{int(time.time())}",
            notes={"user_id": str(me.id), "purpose": "premium_upgrade"},
        )
    except PaymentsNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    except PaymentError as e:
        logger.exception("Razorpay order creation failed user_id=%s", me.id)
        raise HTTPException(status_code=502, detail=str(e))

    order_id = str(order.get("id") or "")
    if not order_id:
        raise HTTPException(status_code=502, detail="Payment gateway returned no order id")
    amount = int(order.get("amount") or premium_price_paise())
    currency = str(order.get("currency") or "INR")
    db.add(PaymentOrder(user_id=me.id, order_id=order_id, amount=amount, currency=currency))
    return {
        "success": True,
        "data": {"order_id": order_id, "amount": amount, "currency": currency, "key_id": razorpay_key_id()},
    }


@app.post("/api/payment/verify")
def payment_verify(
    data: PaymentVerifyIn,
    me: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    quota: Annotated[QuotaTracker, Depends(get_quota_tracker)],
):
    order_id = data.razorpay_order_id.strip()
    payment_id = data.razorpay_payment_id.strip()
    signature = data.razorpay_signature.strip()
    if not order_id or not payment_id or not signature:
        raise HTTPException(status_code=400, detail="Missing payment verification fields")

    try:
        valid = verify_payment_signature(order_id=order_id, payment_id=payment_id, signature=signature)
    except PaymentsNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not valid:
        raise HTTPException(status_code=400, detail="Payment verification failed")

    order = db.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id)).scalar_one_or_none()
    if not order or int(order.user_id) != int(me.id):
        raise HTTPException(status_code=400, detail="Payment verification failed")
    order.status = "paid"
    order.payment_id = payment_id
    db.add(order)
    db.flush()

    quota.upgrade(db, me)
    return {"success": True, "message": "Payment verified! Account upgraded to Premium.", "user": _user_out(me)}

from __future__ import annotations

import datetime as dt
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from threading import Lock
from typing import Any, Iterator

from sqlalchemy import select, update as sa_update
from sqlalchemy.orm import Session

from app.clock import Clock, system_clock
from app.models import User

logger = logging.getLogger(__name__)


class QuotaKind(str, Enum):
    CONTACT_VIEW = "contact_view"
    LISTING = "listing"


@dataclass(frozen=True)
class AccountLimits:
    contact_views: int
    listings: int

    def for_kind(self, kind: QuotaKind) -> int:
        return self.contact_views if kind == QuotaKind.CONTACT_VIEW else self.listings


ACCOUNT_LIMITS: dict[str, AccountLimits] = {
    "free": AccountLimits(contact_views=1, listings=2),
    "premium": AccountLimits(contact_views=10, listings=20),
}


def limits_for(account_type: str) -> AccountLimits:
    # Unknown tiers get the most restrictive table.
    return ACCOUNT_LIMITS.get((account_type or "").strip().lower(), ACCOUNT_LIMITS["free"])


class LimitReached(Exception):
    def __init__(self, *, kind: QuotaKind, limit: int, used: int, account_type: str) -> None:
        self.kind = kind
        self.limit = int(limit)
        self.used = int(used)
        self.account_type = account_type
        if kind == QuotaKind.CONTACT_VIEW:
            msg = (
                f"You have reached your monthly contact view limit ({self.limit} for {account_type} accounts). "
                "Upgrade to Premium for more contact views."
            )
        else:
            msg = (
                f"You have reached your monthly listing limit ({self.limit} for {account_type} accounts). "
                "Upgrade to Premium for more listings."
            )
        super().__init__(msg)


@dataclass(frozen=True)
class QuotaCounters:
    """Snapshot of the quota fields stored on a user row."""

    account_type: str = "free"
    contact_views_used: int = 0
    contact_views_reset_date: dt.datetime | None = None
    properties_listed_this_month: int = 0
    properties_listed_reset_date: dt.datetime | None = None

    @classmethod
    def from_user(cls, user: Any) -> "QuotaCounters":
        return cls(
            account_type=(user.account_type or "free"),
            contact_views_used=int(user.contact_views_used or 0),
            contact_views_reset_date=user.contact_views_reset_date,
            properties_listed_this_month=int(user.properties_listed_this_month or 0),
            properties_listed_reset_date=user.properties_listed_reset_date,
        )

    def used(self, kind: QuotaKind) -> int:
        return self.contact_views_used if kind == QuotaKind.CONTACT_VIEW else self.properties_listed_this_month

    def as_columns(self) -> dict[str, Any]:
        return {
            "account_type": self.account_type,
            "contact_views_used": self.contact_views_used,
            "contact_views_reset_date": self.contact_views_reset_date,
            "properties_listed_this_month": self.properties_listed_this_month,
            "properties_listed_reset_date": self.properties_listed_reset_date,
        }


def _same_month(stored: dt.datetime | None, now: dt.datetime) -> bool:
    if stored is None:
        return False
    return (stored.year, stored.month) == (now.year, now.month)


def reset_if_new_month(counters: QuotaCounters, now: dt.datetime) -> QuotaCounters:
    """
    Zeroes each counter whose reset date falls in an earlier (year, month) than `now`.

    The two counters are independent. Calling this twice in the same month is a no-op.
    """
    out = counters
    if not _same_month(out.contact_views_reset_date, now):
        out = replace(out, contact_views_used=0, contact_views_reset_date=now)
    if not _same_month(out.properties_listed_reset_date, now):
        out = replace(out, properties_listed_this_month=0, properties_listed_reset_date=now)
    return out


def check_and_consume(counters: QuotaCounters, kind: QuotaKind) -> tuple[QuotaCounters, int]:
    """
    Returns the counters with one more use of `kind` and the uses left afterwards.

    Raises `LimitReached` (leaving `counters` untouched) when the tier limit is used up.
    """
    limit = limits_for(counters.account_type).for_kind(kind)
    used = counters.used(kind)
    if used >= limit:
        raise LimitReached(kind=kind, limit=limit, used=used, account_type=counters.account_type)
    if kind == QuotaKind.CONTACT_VIEW:
        counters = replace(counters, contact_views_used=used + 1)
    else:
        counters = replace(counters, properties_listed_this_month=used + 1)
    return counters, limit - (used + 1)


def upgrade_to_host(role: str) -> str:
    """Guests become hosts when they publish; other roles are kept."""
    return "host" if (role or "guest") == "guest" else role


def upgrade_to_premium(counters: QuotaCounters) -> QuotaCounters:
    return replace(counters, account_type="premium")


class QuotaTracker:
    """
    Applies the quota rules to persisted users.

    Each user's read-modify-write runs under that user's lock stripe and only
    the counter columns are written back, so other profile fields are never
    re-validated or overwritten. The stripe pool has a fixed size; users that
    share a stripe are serialized with each other.
    """

    def __init__(self, clock: Clock | None = None, lock_stripes: int = 64) -> None:
        self._clock = clock or system_clock
        self._locks = [Lock() for _ in range(max(1, int(lock_stripes)))]

    def lock_for(self, user_id: int) -> Lock:
        return self._locks[int(user_id) % len(self._locks)]

    def _load(self, db: Session, user_id: int) -> QuotaCounters:
        row = db.execute(
            select(
                User.account_type,
                User.contact_views_used,
                User.contact_views_reset_date,
                User.properties_listed_this_month,
                User.properties_listed_reset_date,
            ).where(User.id == int(user_id))
        ).one()
        return QuotaCounters(
            account_type=row.account_type or "free",
            contact_views_used=int(row.contact_views_used or 0),
            contact_views_reset_date=row.contact_views_reset_date,
            properties_listed_this_month=int(row.properties_listed_this_month or 0),
            properties_listed_reset_date=row.properties_listed_reset_date,
        )

    def _store(self, db: Session, user_id: int, counters: QuotaCounters) -> None:
        db.execute(sa_update(User).where(User.id == int(user_id)).values(**counters.as_columns()))
        db.commit()

    def refresh(self, db: Session, user: User) -> QuotaCounters:
        """Applies the monthly reset to `user` and persists it when anything changed."""
        with self.lock_for(user.id):
            current = self._load(db, user.id)
            counters = reset_if_new_month(current, self._clock.utcnow())
            if counters != current:
                self._store(db, user.id, counters)
            return counters

    @contextmanager
    def reserve(self, db: Session, user: User, kind: QuotaKind) -> Iterator[int]:
        """
        Holds one unit of `kind` for `user` while the body runs.

        The counter is only written when the body completes; `LimitReached`
        is raised before the body when nothing is left. Yields the uses
        remaining after this one.
        """
        with self.lock_for(user.id):
            counters = reset_if_new_month(self._load(db, user.id), self._clock.utcnow())
            try:
                updated, remaining = check_and_consume(counters, kind)
            except LimitReached:
                logger.info("Quota exhausted user_id=%s kind=%s", user.id, kind.value)
                raise
            yield remaining
            self._store(db, user.id, updated)

    def consume(self, db: Session, user: User, kind: QuotaKind) -> int:
        with self.reserve(db, user, kind) as remaining:
            return remaining

    def upgrade(self, db: Session, user: User) -> QuotaCounters:
        with self.lock_for(user.id):
            counters = upgrade_to_premium(self._load(db, user.id))
            self._store(db, user.id, counters)
        logger.info("Account upgraded to premium user_id=%s", user.id)
        return counters


quota_tracker = QuotaTracker()

from __future__ import annotations

import datetime as dt
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.models import Base, User
from app.quota import (
    LimitReached,
    QuotaCounters,
    QuotaKind,
    QuotaTracker,
    check_and_consume,
    limits_for,
    reset_if_new_month,
    upgrade_to_host,
    upgrade_to_premium,
)

MARCH = dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.timezone.utc)
APRIL = dt.datetime(2026, 4, 1, 0, 0, tzinfo=dt.timezone.utc)


def test_limits_table():
    assert limits_for("free").contact_views == 1
    assert limits_for("free").listings == 2
    assert limits_for("premium").contact_views == 10
    assert limits_for("premium").listings == 20
    # Unknown tiers are treated as free.
    assert limits_for("gold") == limits_for("free")


def test_reset_zeroes_counters_from_an_earlier_month():
    c = QuotaCounters(
        contact_views_used=1,
        contact_views_reset_date=MARCH,
        properties_listed_this_month=2,
        properties_listed_reset_date=MARCH,
    )
    out = reset_if_new_month(c, APRIL)
    assert out.contact_views_used == 0
    assert out.properties_listed_this_month == 0
    assert out.contact_views_reset_date == APRIL
    assert out.properties_listed_reset_date == APRIL


def test_reset_is_a_no_op_within_the_month():
    c = QuotaCounters(
        contact_views_used=1,
        contact_views_reset_date=MARCH,
        properties_listed_this_month=1,
        properties_listed_reset_date=MARCH,
    )
    later = MARCH + dt.timedelta(days=10)
    assert reset_if_new_month(c, later) == c
    assert reset_if_new_month(reset_if_new_month(c, later), later) == c


def test_reset_handles_each_counter_independently():
    c = QuotaCounters(
        contact_views_used=1,
        contact_views_reset_date=APRIL,
        properties_listed_this_month=2,
        properties_listed_reset_date=MARCH,
    )
    out = reset_if_new_month(c, APRIL + dt.timedelta(days=3))
    assert out.contact_views_used == 1
    assert out.properties_listed_this_month == 0


def test_reset_same_month_of_another_year():
    c = QuotaCounters(contact_views_used=1, contact_views_reset_date=MARCH.replace(year=2025))
    assert reset_if_new_month(c, MARCH).contact_views_used == 0


def test_missing_reset_date_resets():
    c = QuotaCounters(contact_views_used=1, contact_views_reset_date=None)
    out = reset_if_new_month(c, MARCH)
    assert out.contact_views_used == 0
    assert out.contact_views_reset_date == MARCH


def test_free_contact_view_allows_one():
    c = reset_if_new_month(QuotaCounters(), MARCH)

    c, remaining = check_and_consume(c, QuotaKind.CONTACT_VIEW)
    assert remaining == 0
    assert c.contact_views_used == 1

    with pytest.raises(LimitReached) as exc:
        check_and_consume(c, QuotaKind.CONTACT_VIEW)
    assert exc.value.limit == 1
    assert exc.value.used == 1
    assert exc.value.account_type == "free"
    assert "contact view limit (1 for free accounts)" in str(exc.value)


def test_failed_consume_leaves_counters_untouched():
    c = QuotaCounters(properties_listed_this_month=2, properties_listed_reset_date=MARCH)
    with pytest.raises(LimitReached):
        check_and_consume(c, QuotaKind.LISTING)
    assert c.properties_listed_this_month == 2


def test_premium_listing_remaining_counts_down():
    c = QuotaCounters(account_type="premium", properties_listed_reset_date=MARCH)
    remaining = []
    for _ in range(3):
        c, left = check_and_consume(c, QuotaKind.LISTING)
        remaining.append(left)
    assert remaining == [19, 18, 17]


def test_upgrades():
    assert upgrade_to_host("guest") == "host"
    assert upgrade_to_host("host") == "host"
    assert upgrade_to_host("admin") == "admin"
    c = upgrade_to_premium(QuotaCounters(contact_views_used=1))
    assert c.account_type == "premium"
    assert c.contact_views_used == 1


# ── QuotaTracker against the database ─────────────────────────────────────


def _user(db, **kw) -> User:
    u = User(name="Quota User", city="Pune", **kw)
    db.add(u)
    db.commit()
    return u


def test_tracker_consume_persists_counter(db, tracker):
    user = _user(db, contact_views_reset_date=MARCH)

    assert tracker.consume(db, user, QuotaKind.CONTACT_VIEW) == 0
    db.refresh(user)
    assert user.contact_views_used == 1

    with pytest.raises(LimitReached):
        tracker.consume(db, user, QuotaKind.CONTACT_VIEW)
    db.refresh(user)
    assert user.contact_views_used == 1


def test_tracker_resets_on_new_month(db, tracker, clock):
    user = _user(db, contact_views_used=1, contact_views_reset_date=MARCH)
    clock.set_utcnow(APRIL)

    assert tracker.consume(db, user, QuotaKind.CONTACT_VIEW) == 0
    db.refresh(user)
    assert user.contact_views_used == 1
    assert (user.contact_views_reset_date.year, user.contact_views_reset_date.month) == (2026, 4)


def test_tracker_refresh_applies_reset_only(db, tracker, clock):
    user = _user(
        db,
        contact_views_used=1,
        contact_views_reset_date=MARCH,
        properties_listed_this_month=2,
        properties_listed_reset_date=MARCH,
    )
    clock.set_utcnow(APRIL)

    counters = tracker.refresh(db, user)
    assert counters.contact_views_used == 0
    assert counters.properties_listed_this_month == 0
    db.refresh(user)
    assert user.contact_views_used == 0
    assert user.properties_listed_this_month == 0


def test_tracker_reserve_does_not_charge_failed_body(db, tracker):
    user = _user(db, properties_listed_reset_date=MARCH)

    with pytest.raises(RuntimeError):
        with tracker.reserve(db, user, QuotaKind.LISTING):
            raise RuntimeError("listing rejected")

    db.refresh(user)
    assert user.properties_listed_this_month == 0


def test_tracker_write_only_touches_counters(session_factory, tracker):
    db = session_factory()
    user = _user(db, contact_views_reset_date=MARCH)

    # A profile edit committed elsewhere must survive the counter write.
    other = session_factory()
    other.get(User, user.id).name = "Renamed User"
    other.commit()
    other.close()

    tracker.consume(db, user, QuotaKind.CONTACT_VIEW)

    check = session_factory()
    fresh = check.get(User, user.id)
    assert fresh.name == "Renamed User"
    assert fresh.contact_views_used == 1
    check.close()
    db.close()


def test_tracker_upgrade_raises_limits(db, tracker):
    user = _user(db, contact_views_used=1, contact_views_reset_date=MARCH)

    tracker.upgrade(db, user)
    db.refresh(user)
    assert user.account_type == "premium"
    assert tracker.consume(db, user, QuotaKind.CONTACT_VIEW) == 8


def test_tracker_serializes_concurrent_consumes(tmp_path, tracker):
    # File database: each thread gets its own connection.
    engine = create_engine(f"sqlite:///{tmp_path / 'quota.db'}", connect_args={"check_same_thread": False}, future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    setup = factory()
    user_id = _user(setup, account_type="premium", contact_views_reset_date=MARCH).id
    setup.close()

    outcomes: list[str] = []
    start = threading.Barrier(15)

    def worker():
        s = factory()
        try:
            u = s.get(User, user_id)
            start.wait()
            try:
                tracker.consume(s, u, QuotaKind.CONTACT_VIEW)
                outcomes.append("ok")
            except LimitReached:
                outcomes.append("limit")
        finally:
            s.close()

    threads = [threading.Thread(target=worker) for _ in range(15)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 10
    assert outcomes.count("limit") == 5
    check = factory()
    assert check.get(User, user_id).contact_views_used == 10
    check.close()
    engine.dispose()


def test_tracker_lock_pool_is_fixed_size(clock):
    tracker = QuotaTracker(clock, lock_stripes=4)
    locks = {id(tracker.lock_for(user_id)) for user_id in range(1, 1000)}
    assert len(locks) == 4
    assert tracker.lock_for(3) is tracker.lock_for(7)
    assert tracker.lock_for(3) is not tracker.lock_for(4)

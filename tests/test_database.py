"""Tests for the SQLite store: settings, reservations and conditional transitions."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from bookingdesk.database import Database
from bookingdesk.models import AvailabilitySetting, Reservation, ReservationStatus

START = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path):
    d = Database(tmp_path / "test.db")
    d.connect()
    yield d
    d.close()


def make_reservation(
    rid: str = "r1",
    start: datetime = START,
    minutes: int = 30,
    status: ReservationStatus = ReservationStatus.PENDING_VERIFICATION,
) -> Reservation:
    return Reservation(
        id=rid,
        guest_name="Ada Lovelace",
        guest_email="ada@example.com",
        topic="Analytical engines",
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        booker_timezone="Europe/London",
        approval_token=f"approve-{rid}",
        status=status,
        verification_token=f"verify-{rid}",
        verification_expires_at=START + timedelta(hours=24),
    )


class TestSettings:
    def test_upsert_and_get(self, db):
        sid = db.upsert_setting(AvailabilitySetting(day_of_week=1, start_time="10:00", end_time="16:00"))
        setting = db.get_setting(1)
        assert setting.id == sid
        assert (setting.start_time, setting.end_time) == ("10:00", "16:00")
        assert setting.is_active

    def test_upsert_replaces_existing_row(self, db):
        first = db.upsert_setting(AvailabilitySetting(day_of_week=2, start_time="09:00", end_time="12:00"))
        second = db.upsert_setting(
            AvailabilitySetting(day_of_week=2, start_time="13:00", end_time="18:00", is_active=False)
        )
        assert first == second
        assert len(db.get_availability_settings()) == 1
        setting = db.get_setting(2)
        assert setting.start_time == "13:00"
        assert not setting.is_active

    def test_date_override_is_separate_from_weekly_row(self, db):
        db.upsert_setting(AvailabilitySetting(day_of_week=1, start_time="09:00", end_time="17:00"))
        db.upsert_setting(
            AvailabilitySetting(day_of_week=1, start_time="13:00", end_time="15:00", specific_date="2026-03-02")
        )
        assert db.get_setting(1).start_time == "09:00"
        assert db.get_setting(1, "2026-03-02").start_time == "13:00"
        assert db.get_setting(1, "2026-03-09") is None

    def test_delete_setting(self, db):
        sid = db.upsert_setting(AvailabilitySetting(day_of_week=3))
        assert db.delete_setting(sid)
        assert not db.delete_setting(sid)
        assert db.get_setting(3) is None


class TestReservations:
    def test_insert_and_read_back(self, db):
        db.insert_reservation(make_reservation())
        r = db.get_reservation("r1")
        assert r.guest_email == "ada@example.com"
        assert r.start_time == START
        assert r.status == ReservationStatus.PENDING_VERIFICATION
        assert r.verification_expires_at == START + timedelta(hours=24)

    def test_find_by_token_respects_status(self, db):
        db.insert_reservation(make_reservation())
        assert db.find_by_token("verification_token", "verify-r1", ReservationStatus.PENDING_VERIFICATION)
        assert db.find_by_token("verification_token", "verify-r1", ReservationStatus.PENDING_APPROVAL) is None
        assert db.find_by_token("approval_token", "nope", ReservationStatus.PENDING_APPROVAL) is None

    def test_find_by_token_rejects_other_columns(self, db):
        with pytest.raises(ValueError):
            db.find_by_token("guest_email", "ada@example.com", ReservationStatus.PENDING_VERIFICATION)

    def test_window_query_uses_overlap_and_live_statuses(self, db):
        db.insert_reservation(make_reservation("a", START))
        db.insert_reservation(make_reservation("b", START + timedelta(hours=1), status=ReservationStatus.APPROVED))
        db.insert_reservation(make_reservation("c", START + timedelta(hours=2), status=ReservationStatus.REJECTED))
        # Starts before the window but runs into it
        db.insert_reservation(make_reservation("d", START - timedelta(minutes=15)))

        found = db.get_reservations_between(START, START + timedelta(hours=3))
        assert [r.id for r in found] == ["d", "a", "b"]

    def test_insert_if_free_refuses_overlap(self, db):
        assert db.insert_reservation_if_free(make_reservation("a"))
        assert not db.insert_reservation_if_free(make_reservation("b", START + timedelta(minutes=15)))
        assert db.get_reservation("b") is None
        # Back-to-back is fine
        assert db.insert_reservation_if_free(make_reservation("c", START + timedelta(minutes=30)))

    def test_insert_if_free_ignores_rejected(self, db):
        db.insert_reservation(make_reservation("a", status=ReservationStatus.REJECTED))
        assert db.insert_reservation_if_free(make_reservation("b"))


class TestTransition:
    def test_transition_applies_updates(self, db):
        db.insert_reservation(make_reservation())
        now = datetime.now(timezone.utc)
        updated = db.transition(
            "verification_token", "verify-r1", ReservationStatus.PENDING_VERIFICATION,
            {
                "status": ReservationStatus.PENDING_APPROVAL,
                "verified_at": now,
                "verification_token": None,
                "verification_expires_at": None,
            },
        )
        assert updated.status == ReservationStatus.PENDING_APPROVAL
        assert updated.verification_token is None
        assert updated.verification_expires_at is None
        assert abs(updated.verified_at - now) < timedelta(milliseconds=1)

    def test_transition_from_wrong_status_is_noop(self, db):
        db.insert_reservation(make_reservation())
        result = db.transition(
            "approval_token", "approve-r1", ReservationStatus.PENDING_APPROVAL,
            {"status": ReservationStatus.APPROVED},
        )
        assert result is None
        assert db.get_reservation("r1").status == ReservationStatus.PENDING_VERIFICATION

    def test_transition_rejects_unknown_columns(self, db):
        db.insert_reservation(make_reservation())
        with pytest.raises(ValueError):
            db.transition(
                "approval_token", "approve-r1", ReservationStatus.PENDING_VERIFICATION,
                {"guest_email": "evil@example.com"},
            )

    def test_concurrent_transitions_have_one_winner(self, db):
        db.insert_reservation(make_reservation(status=ReservationStatus.PENDING_APPROVAL))
        results = []

        def approve():
            results.append(
                db.transition(
                    "approval_token", "approve-r1", ReservationStatus.PENDING_APPROVAL,
                    {"status": ReservationStatus.APPROVED, "approved_at": datetime.now(timezone.utc)},
                )
            )

        threads = [threading.Thread(target=approve) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1
        assert db.get_reservation("r1").status == ReservationStatus.APPROVED

    def test_set_external_event_id(self, db):
        db.insert_reservation(make_reservation(status=ReservationStatus.APPROVED))
        db.set_external_event_id("r1", "evt-1")
        assert db.get_reservation("r1").external_event_id == "evt-1"

"""Tests for the Resend-backed e-mail notifier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import resend

from bookingdesk.config import EmailConfig, OwnerConfig
from bookingdesk.errors import UpstreamError
from bookingdesk.models import MeetingPreference, Reservation, ReservationStatus
from bookingdesk.notifications import EmailNotifier

START = datetime(2026, 3, 5, 19, 0, tzinfo=timezone.utc)


def make_notifier(api_key: str = "re_test", owner_email: str = "owner@example.com") -> EmailNotifier:
    return EmailNotifier(
        EmailConfig(resend_api_key=api_key, from_address="Bookings <bookings@example.com>"),
        OwnerConfig(name="Pat Owner", email=owner_email),
        owner_timezone="America/New_York",
    )


def make_reservation(**overrides) -> Reservation:
    data = dict(
        id="abc123",
        guest_name="Ada <script>",
        guest_email="ada@example.com",
        topic="Engines & more",
        start_time=START,
        end_time=START + timedelta(minutes=30),
        booker_timezone="Europe/London",
        approval_token="approve-token",
        status=ReservationStatus.PENDING_APPROVAL,
    )
    data.update(overrides)
    return Reservation(**data)


@pytest.mark.asyncio
async def test_verification_email():
    with patch.object(resend.Emails, "send") as send:
        await make_notifier().send_verification(
            "ada@example.com", "Ada", "https://example.com/api/bookings/verify?token=t1"
        )
    params = send.call_args.args[0]
    assert params["to"] == ["ada@example.com"]
    assert params["from"] == "Bookings <bookings@example.com>"
    assert params["subject"] == "Verify your booking request - Pat Owner"
    assert "https://example.com/api/bookings/verify?token=t1" in params["html"]
    assert "expire in 24 hours" in params["html"]


@pytest.mark.asyncio
async def test_owner_notification_escapes_guest_input():
    with patch.object(resend.Emails, "send") as send:
        await make_notifier().send_owner_notification(
            make_reservation(notes="<b>bring slides</b>"),
            "https://example.com/api/bookings/approve?token=a&x=1",
            "https://example.com/api/bookings/reject?token=a",
        )
    params = send.call_args.args[0]
    assert params["to"] == ["owner@example.com"]
    assert params["subject"] == "New booking request from Ada <script>"
    body = params["html"]
    assert "<script>" not in body
    assert "Ada &lt;script&gt;" in body
    assert "Engines &amp; more" in body
    assert "&lt;b&gt;bring slides&lt;/b&gt;" in body
    assert "approve?token=a&amp;x=1" in body
    # 19:00 UTC is 2 PM in New York
    assert "Thursday, March 5, 2026 at 2:00 PM" in body
    assert "Google Meet (auto-generated)" in body


@pytest.mark.asyncio
async def test_owner_notification_shows_phone_number():
    with patch.object(resend.Emails, "send") as send:
        await make_notifier().send_owner_notification(
            make_reservation(meeting_preference=MeetingPreference.PHONE, phone_number="+15550100"),
            "https://a", "https://r",
        )
    assert "Phone call: +15550100" in send.call_args.args[0]["html"]


@pytest.mark.asyncio
async def test_rejection_email():
    with patch.object(resend.Emails, "send") as send:
        await make_notifier().send_rejection("ada@example.com", "Ada", "Engines")
    params = send.call_args.args[0]
    assert params["subject"] == "Booking request update - Pat Owner"
    assert "&quot;Engines&quot;" in params["html"] or '"Engines"' in params["html"]


@pytest.mark.asyncio
async def test_without_api_key_only_logs(caplog):
    notifier = make_notifier(api_key="")
    with patch.object(resend.Emails, "send") as send, caplog.at_level("INFO"):
        await notifier.send_verification("ada@example.com", "Ada", "https://example.com/verify?token=t")
        await notifier.send_owner_notification(make_reservation(), "https://a", "https://r")
        await notifier.send_rejection("ada@example.com", "Ada", "Engines")
    send.assert_not_called()
    assert "https://example.com/verify?token=t" in caplog.text


@pytest.mark.asyncio
async def test_owner_notification_needs_owner_address():
    with patch.object(resend.Emails, "send") as send:
        await make_notifier(owner_email="").send_owner_notification(make_reservation(), "https://a", "https://r")
    send.assert_not_called()


@pytest.mark.asyncio
async def test_provider_failure_becomes_upstream_error():
    with patch.object(resend.Emails, "send", side_effect=RuntimeError("domain not verified")):
        with pytest.raises(UpstreamError, match="domain not verified"):
            await make_notifier().send_rejection("ada@example.com", "Ada", "Engines")

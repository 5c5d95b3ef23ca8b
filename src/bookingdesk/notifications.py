"""Booking e-mails: guest verification, owner approval request, guest rejection."""

from __future__ import annotations

import asyncio
import html
import logging
from zoneinfo import ZoneInfo

import resend

from .config import EmailConfig, OwnerConfig
from .core.slots import format_for_display
from .errors import UpstreamError
from .models import MeetingPreference, Reservation

logger = logging.getLogger(__name__)

_PAGE = (
    "<!DOCTYPE html><html><head><meta charset='utf-8'>"
    "<meta name='viewport' content='width=device-width, initial-scale=1.0'></head>"
    "<body style='font-family:system-ui,-apple-system,sans-serif;background:#f4f4f5;"
    "padding:20px;margin:0'>"
    "<div style='max-width:500px;margin:0 auto;background:#fff;border-radius:12px;"
    "padding:32px'>{body}"
    "<hr style='border:none;border-top:1px solid #e5e7eb;margin:24px 0'>"
    "<p style='color:#9ca3af;font-size:12px;margin:0'>{footer}</p>"
    "</div></body></html>"
)
_BUTTON = (
    "<a href='{url}' style='display:inline-block;background:{color};color:#fff;"
    "padding:14px 28px;border-radius:8px;text-decoration:none;font-weight:600;"
    "margin-right:8px'>{label}</a>"
)

_PREFERENCE_LABELS = {
    MeetingPreference.GOOGLE_MEET: "Google Meet (auto-generated)",
    MeetingPreference.CUSTOM_LINK: "Custom link",
    MeetingPreference.PHONE: "Phone call",
}


class EmailNotifier:
    """Sends booking e-mails through Resend.

    Without an API key nothing is sent; the would-be message is logged so
    local development still shows the verification and approval links.
    """

    def __init__(self, config: EmailConfig, owner: OwnerConfig, owner_timezone: str = "UTC"):
        self.config = config
        self.owner = owner
        self.owner_tz = ZoneInfo(owner_timezone)
        if config.resend_api_key:
            resend.api_key = config.resend_api_key

    @property
    def enabled(self) -> bool:
        return bool(self.config.resend_api_key)

    async def _send(self, to: str, subject: str, body: str) -> None:
        params = {
            "from": self.config.from_address,
            "to": [to],
            "subject": subject,
            "html": _PAGE.format(body=body, footer=html.escape(self.owner.name)),
        }
        try:
            await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            raise UpstreamError(f"Resend rejected e-mail to {to}: {e}") from e
        logger.info("Sent %r to %s", subject, to)

    async def send_verification(self, to: str, name: str, verification_url: str) -> None:
        """Ask the guest to confirm their address before the owner sees the request."""
        if not self.enabled:
            logger.info("Would send verification email to %s: %s", to, verification_url)
            return
        body = (
            "<h1 style='color:#8e4585;font-size:24px'>Verify Your Booking</h1>"
            f"<p>Hi {html.escape(name)},</p>"
            "<p>Thank you for your booking request. Please click the button below to "
            "verify your email address and submit your request for approval.</p>"
            + _BUTTON.format(url=html.escape(verification_url), color="#8e4585", label="Verify Booking Request")
            + "<p style='color:#6b7280;font-size:14px'>This link will expire in 24 hours. "
            "If you didn't request this booking, you can safely ignore this email.</p>"
        )
        await self._send(to, f"Verify your booking request - {self.owner.name}", body)

    async def send_owner_notification(
        self, reservation: Reservation, approve_url: str, reject_url: str
    ) -> None:
        """Tell the owner about a verified request, with one-click approve/reject links."""
        if not self.enabled or not self.owner.email:
            logger.info(
                "Would send owner notification for booking %s (approve: %s, reject: %s)",
                reservation.id, approve_url, reject_url,
            )
            return
        when = format_for_display(reservation.start_time, self.owner_tz)
        meeting = _PREFERENCE_LABELS[reservation.meeting_preference]
        if reservation.meeting_preference == MeetingPreference.CUSTOM_LINK and reservation.custom_meeting_link:
            meeting += f": {reservation.custom_meeting_link}"
        elif reservation.meeting_preference == MeetingPreference.PHONE and reservation.phone_number:
            meeting += f": {reservation.phone_number}"

        body = (
            "<h1 style='color:#8e4585;font-size:24px'>New Booking Request</h1>"
            f"<p><strong>From:</strong> {html.escape(reservation.guest_name)}<br>"
            f"<strong>Email:</strong> {html.escape(reservation.guest_email)}</p>"
            f"<p><strong>When:</strong> {html.escape(when)}"
            f" (guest timezone: {html.escape(reservation.booker_timezone)})</p>"
            f"<p><strong>Topic:</strong> {html.escape(reservation.topic)}</p>"
            f"<p><strong>Meeting:</strong> {html.escape(meeting)}</p>"
        )
        if reservation.notes:
            body += f"<p><strong>Notes:</strong> {html.escape(reservation.notes)}</p>"
        body += (
            "<div style='margin:24px 0'>"
            + _BUTTON.format(url=html.escape(approve_url), color="#16a34a", label="&#10003; Approve")
            + _BUTTON.format(url=html.escape(reject_url), color="#dc2626", label="&#10005; Reject")
            + "</div>"
            f"<p style='color:#9ca3af;font-size:12px'>Booking ID: {html.escape(reservation.id)}</p>"
        )
        await self._send(
            self.owner.email, f"New booking request from {reservation.guest_name}", body
        )

    async def send_rejection(self, to: str, name: str, topic: str) -> None:
        if not self.enabled:
            logger.info("Would send rejection email to %s", to)
            return
        body = (
            "<h1 style='color:#8e4585;font-size:24px'>Booking Request Update</h1>"
            f"<p>Hi {html.escape(name)},</p>"
            f"<p>Unfortunately, I'm unable to accommodate your booking request for "
            f"\"{html.escape(topic)}\" at this time.</p>"
            "<p>Feel free to pick another time that works for you.</p>"
        )
        await self._send(to, f"Booking request update - {self.owner.name}", body)

"""Booking lifecycle: request, e-mail verification, owner approval or rejection.

State machine::

    (none) --create--> pending_verification --verify--> pending_approval
    pending_approval --approve--> approved
    pending_approval --reject--> rejected

Every transition is a conditional update keyed by a single-use token and
the expected status, so a replayed or concurrent click finds nothing to do.
E-mails go out after the state change is committed and never undo it.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from ..calendar.base import CalendarProvider
from ..config import Config
from ..database import Database
from ..errors import (
    CaptchaFailed,
    PersistenceError,
    RateLimitExceeded,
    SlotUnavailable,
    TokenExpired,
    TokenNotFoundOrConsumed,
    UpstreamError,
)
from ..models import MeetingPreference, Reservation, ReservationStatus
from ..notifications import EmailNotifier
from ..security import RateLimiter, TurnstileVerifier
from ..validation import BookingRequest
from .availability import AvailabilityService
from .slots import parse_booking_time

logger = logging.getLogger(__name__)


@dataclass
class BookingCreated:
    booking_id: str
    message: str = "Please check your email to verify your booking request."

    def to_dict(self) -> dict:
        return {"success": True, "message": self.message, "bookingId": self.booking_id}


@dataclass
class FeignedSuccess:
    """Returned to honeypot-tripping bots. Nothing was stored or sent."""

    message: str = "Booking submitted"

    def to_dict(self) -> dict:
        return {"success": True, "message": self.message}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def event_description(reservation: Reservation) -> str:
    parts = []
    if reservation.meeting_preference == MeetingPreference.CUSTOM_LINK and reservation.custom_meeting_link:
        parts.append(f"Meeting link: {reservation.custom_meeting_link}")
    elif reservation.meeting_preference == MeetingPreference.PHONE:
        if reservation.phone_number:
            parts.append(f"Phone call: {reservation.phone_number}")
        else:
            parts.append("This meeting will be conducted via phone.")
    if reservation.notes:
        parts.append(f"\nNotes: {reservation.notes}")
    return "\n".join(parts)


class BookingManager:
    """Drives reservations through verification and approval."""

    def __init__(
        self,
        config: Config,
        db: Database,
        calendar: CalendarProvider,
        notifier: EmailNotifier,
        email_limiter: RateLimiter,
        availability: AvailabilityService | None = None,
        captcha: TurnstileVerifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.db = db
        self.calendar = calendar
        self.notifier = notifier
        self.email_limiter = email_limiter
        self.availability = availability or AvailabilityService(config.availability, calendar, db)
        self.captcha = captcha
        self.clock = clock
        self._tasks: set[asyncio.Task] = set()

    # --- Links ---

    @property
    def _api_base(self) -> str:
        return f"{self.config.web.app_url}{self.config.web.api_prefix}"

    def verification_url(self, token: str) -> str:
        return f"{self._api_base}/bookings/verify?token={token}"

    def approve_url(self, token: str) -> str:
        return f"{self._api_base}/bookings/approve?token={token}"

    def reject_url(self, token: str) -> str:
        return f"{self._api_base}/bookings/reject?token={token}"

    # --- Background side effects ---

    def _spawn(self, coro: Awaitable[None], what: str) -> None:
        """Run a notification without holding up the response."""
        task = asyncio.ensure_future(self._guard(coro, what))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(coro: Awaitable[None], what: str) -> None:
        try:
            await coro
        except UpstreamError as e:
            logger.warning("%s failed: %s", what, e)
        except Exception:
            logger.exception("%s failed unexpectedly", what)

    async def drain(self) -> None:
        """Wait for outstanding notifications."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # --- Lifecycle ---

    async def create(
        self, request: BookingRequest, client_ip: str | None = None
    ) -> BookingCreated | FeignedSuccess:
        """Store a new request in pending_verification and e-mail the guest.

        Raises:
            CaptchaFailed: the CAPTCHA token was rejected.
            RateLimitExceeded: too many requests for this e-mail address.
            SlotUnavailable: the range is taken (only with prevent_double_booking).
            PersistenceError: the store could not save the reservation.
        """
        if request.is_bot:
            logger.info("Honeypot triggered from %s, feigning success", client_ip or "unknown")
            return FeignedSuccess()

        if self.captcha is not None:
            if not await self.captcha.verify(request.turnstile_token, client_ip):
                raise CaptchaFailed("Security verification failed. Please try again.")

        try:
            allowed = await self.email_limiter.check_and_consume(request.email)
        except Exception as e:
            logger.error("E-mail rate limiter unavailable, refusing booking: %s", e)
            allowed = False
        if not allowed:
            raise RateLimitExceeded(
                "Too many booking requests. Please try again tomorrow.", retry_after="24 hours"
            )

        start = parse_booking_time(request.date, request.start_time, request.timezone)
        setting = self.availability.resolve_setting(start.astimezone(self.availability.tz).date())
        duration = setting.slot_duration_minutes or self.config.availability.slot_duration_minutes

        now = self.clock()
        verification_token = secrets.token_urlsafe(32)
        approval_token = secrets.token_urlsafe(32)
        while approval_token == verification_token:
            approval_token = secrets.token_urlsafe(32)

        reservation = Reservation(
            id=uuid.uuid4().hex,
            guest_name=request.name,
            guest_email=request.email,
            topic=request.topic,
            notes=request.notes or None,
            start_time=start,
            end_time=start + timedelta(minutes=duration),
            booker_timezone=request.timezone,
            meeting_preference=request.meeting_preference,
            custom_meeting_link=str(request.custom_meeting_link) if request.custom_meeting_link else None,
            phone_number=request.phone_number,
            status=ReservationStatus.PENDING_VERIFICATION,
            verification_token=verification_token,
            verification_expires_at=now + timedelta(hours=self.config.availability.verification_ttl_hours),
            approval_token=approval_token,
            created_at=now,
        )

        if self.config.availability.prevent_double_booking:
            if not self.db.insert_reservation_if_free(reservation):
                raise SlotUnavailable("This time slot is no longer available.")
        else:
            self.db.insert_reservation(reservation)
        logger.info(
            "Booking %s created for %s at %s", reservation.id, reservation.guest_email,
            reservation.start_time.isoformat(),
        )

        self._spawn(
            self.notifier.send_verification(
                reservation.guest_email, reservation.guest_name, self.verification_url(verification_token)
            ),
            f"Verification e-mail for booking {reservation.id}",
        )
        return BookingCreated(booking_id=reservation.id)

    async def resend_verification(self, booking_id: str) -> Reservation:
        """Issue a fresh verification link for a booking still awaiting it."""
        reservation = self.db.get_reservation(booking_id)
        if not reservation or reservation.status != ReservationStatus.PENDING_VERIFICATION:
            raise TokenNotFoundOrConsumed("No booking awaiting verification")

        token = secrets.token_urlsafe(32)
        updated = self.db.transition(
            "verification_token",
            reservation.verification_token,
            ReservationStatus.PENDING_VERIFICATION,
            {
                "verification_token": token,
                "verification_expires_at": self.clock()
                + timedelta(hours=self.config.availability.verification_ttl_hours),
            },
        )
        if updated is None:
            raise TokenNotFoundOrConsumed("No booking awaiting verification")

        self._spawn(
            self.notifier.send_verification(updated.guest_email, updated.guest_name, self.verification_url(token)),
            f"Verification e-mail for booking {updated.id}",
        )
        return updated

    async def verify(self, token: str) -> Reservation:
        """Confirm the guest's e-mail address and hand the request to the owner.

        Raises:
            TokenNotFoundOrConsumed: unknown token, or the link was already used.
            TokenExpired: the link is past its expiry. The booking is not changed.
        """
        reservation = self.db.find_by_token(
            "verification_token", token, ReservationStatus.PENDING_VERIFICATION
        )
        if reservation is None:
            raise TokenNotFoundOrConsumed("Invalid or already used verification link")

        now = self.clock()
        if reservation.verification_expires_at and reservation.verification_expires_at < now:
            raise TokenExpired(f"Verification link for booking {reservation.id} has expired")

        updated = self.db.transition(
            "verification_token",
            token,
            ReservationStatus.PENDING_VERIFICATION,
            {
                "status": ReservationStatus.PENDING_APPROVAL,
                "verified_at": now,
                "verification_token": None,
                "verification_expires_at": None,
            },
        )
        if updated is None:
            raise TokenNotFoundOrConsumed("Invalid or already used verification link")
        logger.info("Booking %s verified, awaiting approval", updated.id)

        self._spawn(
            self.notifier.send_owner_notification(
                updated, self.approve_url(updated.approval_token), self.reject_url(updated.approval_token)
            ),
            f"Owner notification for booking {updated.id}",
        )
        return updated

    async def approve(self, token: str) -> Reservation:
        """Approve a verified request and put it on the owner's calendar.

        The approval stands even if the calendar event cannot be created.
        """
        updated = self.db.transition(
            "approval_token",
            token,
            ReservationStatus.PENDING_APPROVAL,
            {"status": ReservationStatus.APPROVED, "approved_at": self.clock()},
        )
        if updated is None:
            raise TokenNotFoundOrConsumed("Invalid or already used approval link")
        logger.info("Booking %s approved", updated.id)

        try:
            event = await self.calendar.create_event(
                summary=f"Meeting with {updated.guest_name}: {updated.topic}",
                start=updated.start_time,
                end=updated.end_time,
                description=event_description(updated),
                attendee_email=updated.guest_email,
                create_meet_link=updated.meeting_preference == MeetingPreference.GOOGLE_MEET,
            )
        except Exception as e:
            logger.error("Failed to create calendar event for booking %s: %s", updated.id, e)
            return updated

        event_id = event.get("event_id")
        if event_id:
            try:
                self.db.set_external_event_id(updated.id, event_id)
                updated.external_event_id = event_id
            except PersistenceError as e:
                logger.error("Booking %s: %s", updated.id, e)
        return updated

    async def reject(self, token: str) -> Reservation:
        updated = self.db.transition(
            "approval_token",
            token,
            ReservationStatus.PENDING_APPROVAL,
            {"status": ReservationStatus.REJECTED, "rejected_at": self.clock()},
        )
        if updated is None:
            raise TokenNotFoundOrConsumed("Invalid or already used rejection link")
        logger.info("Booking %s rejected", updated.id)

        self._spawn(
            self.notifier.send_rejection(updated.guest_email, updated.guest_name, updated.topic),
            f"Rejection e-mail for booking {updated.id}",
        )
        return updated

"""HTTP surface: availability queries, booking submission and the e-mailed action links."""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from . import __version__
from .config import Config
from .core.availability import AvailabilityService
from .core.booking import BookingManager
from .database import Database
from .errors import (
    BookingValidationError,
    CaptchaFailed,
    HorizonExceeded,
    PersistenceError,
    RateLimitExceeded,
    SlotUnavailable,
    TokenExpired,
    TokenNotFoundOrConsumed,
)
from .security import RateLimiter
from .validation import parse_availability_update, parse_booking_request

logger = logging.getLogger(__name__)

IP_RETRY_AFTER_SECONDS = 3600


def client_ip(request: Request) -> str:
    """Best guess at the caller's address behind Vercel/Cloudflare-style proxies."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        # Leftmost entry is the original client
        return forwarded.split(",")[0].strip()
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def create_app(
    config: Config,
    db: Database,
    availability: AvailabilityService,
    bookings: BookingManager,
    ip_limiter: RateLimiter,
) -> FastAPI:
    """Build the FastAPI application. Routes live under ``config.web.api_prefix``."""
    prefix = config.web.api_prefix
    app_url = config.web.app_url

    @asynccontextmanager
    async def lifespan(app):
        yield
        # Let queued e-mails finish before the process exits
        await bookings.drain()
        db.close()

    app = FastAPI(title="bookingdesk", version=__version__, lifespan=lifespan)
    origins = config.web.allowed_origins or []
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["Authorization", "Content-Type"],
        )

    def redirect(path: str) -> RedirectResponse:
        return RedirectResponse(f"{app_url}{path}", status_code=307)

    def error_redirect(reason: str) -> RedirectResponse:
        return redirect(f"/book/error?reason={reason}")

    def check_api_key(request: Request) -> None:
        if not config.web.api_key:
            raise HTTPException(
                status_code=403,
                detail="Admin API disabled. Set BOOKINGDESK_API_KEY to enable.",
            )
        auth = request.headers.get("authorization", "")
        if not auth or not hmac.compare_digest(auth.replace("Bearer ", ""), config.web.api_key):
            raise HTTPException(status_code=401, detail="Invalid API key")

    # --- Availability ---

    @app.get(f"{prefix}/availability")
    async def day_availability(date: str | None = None, timezone: str | None = None):
        day = _parse_date(date)
        if day is None:
            return _error(400, "Valid date parameter required (YYYY-MM-DD)")
        visitor_tz = timezone or config.availability.timezone
        try:
            result = await availability.get_day_availability(day, visitor_tz)
        except ValueError as e:
            return _error(400, str(e))
        except Exception:
            logger.exception("Availability lookup failed for %s", date)
            return _error(500, "Failed to fetch availability")
        return result.to_dict()

    @app.get(f"{prefix}/availability/week")
    async def week_availability(start: str | None = None, timezone: str | None = None):
        week_start = _parse_date(start)
        if week_start is None:
            return _error(400, "Valid start parameter required (YYYY-MM-DD)")
        visitor_tz = timezone or config.availability.timezone
        try:
            result = await availability.get_week_availability(week_start, visitor_tz)
        except (HorizonExceeded, ValueError) as e:
            return _error(400, str(e))
        except Exception:
            logger.exception("Weekly availability lookup failed for %s", start)
            return _error(500, "Failed to fetch weekly availability")
        return result.to_dict()

    # --- Booking ---

    @app.post(f"{prefix}/book")
    async def book(request: Request):
        ip = client_ip(request)
        try:
            allowed = await ip_limiter.check_and_consume(ip)
        except Exception as e:
            logger.error("IP rate limiter unavailable, refusing booking from %s: %s", ip, e)
            allowed = False
        if not allowed:
            logger.warning("IP rate limit hit for %s", ip)
            return JSONResponse(
                {"error": "Too many requests. Please try again later.", "retryAfter": "1 hour"},
                status_code=429,
                headers={"Retry-After": str(IP_RETRY_AFTER_SECONDS), "X-RateLimit-Remaining": "0"},
            )

        try:
            payload = await request.json()
        except ValueError:
            payload = None

        try:
            booking_request = parse_booking_request(payload)
            result = await bookings.create(booking_request, client_ip=ip)
        except BookingValidationError as e:
            return _error(400, str(e), details=e.details)
        except CaptchaFailed as e:
            return _error(400, str(e))
        except RateLimitExceeded as e:
            return _error(429, str(e), retryAfter=e.retry_after)
        except SlotUnavailable as e:
            return _error(409, str(e))
        except PersistenceError as e:
            logger.error("Failed to create booking: %s", e)
            return _error(500, "Failed to create booking. Please try again.")
        except Exception:
            logger.exception("Booking API error")
            return _error(500, "An unexpected error occurred. Please try again.")
        return result.to_dict()

    # --- E-mailed action links ---

    async def run_action(action, token: str | None, success_path: str) -> RedirectResponse:
        if not token:
            return error_redirect("missing_token")
        try:
            await action(token)
        except TokenNotFoundOrConsumed:
            return error_redirect("invalid_token")
        except TokenExpired:
            return error_redirect("expired")
        except PersistenceError as e:
            logger.error("Booking update failed: %s", e)
            return error_redirect("update_failed")
        except Exception:
            logger.exception("Booking action failed")
            return error_redirect("unknown")
        return redirect(success_path)

    @app.get(f"{prefix}/bookings/verify")
    async def verify_booking(token: str | None = None):
        return await run_action(bookings.verify, token, "/book/verified")

    @app.get(f"{prefix}/bookings/approve")
    async def approve_booking(token: str | None = None):
        return await run_action(bookings.approve, token, "/book/approved")

    @app.get(f"{prefix}/bookings/reject")
    async def reject_booking(token: str | None = None):
        return await run_action(bookings.reject, token, "/book/rejected")

    # --- Admin: working hours ---

    @app.get(f"{prefix}/admin/availability")
    async def list_settings(request: Request):
        check_api_key(request)
        return {
            "settings": [
                {
                    "id": s.id,
                    "dayOfWeek": s.day_of_week,
                    "specificDate": s.specific_date or None,
                    "startTime": s.start_time,
                    "endTime": s.end_time,
                    "slotDurationMinutes": s.slot_duration_minutes,
                    "isActive": s.is_active,
                }
                for s in db.get_availability_settings()
            ]
        }

    @app.put(f"{prefix}/admin/availability")
    async def update_setting(request: Request):
        check_api_key(request)
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        try:
            update = parse_availability_update(payload)
            setting_id = db.upsert_setting(update.to_setting())
        except BookingValidationError as e:
            return _error(400, str(e), details=e.details)
        except PersistenceError as e:
            logger.error("%s", e)
            return _error(500, "Failed to update availability")
        return {"id": setting_id, "status": "saved"}

    @app.delete(f"{prefix}/admin/availability/{{setting_id}}")
    async def delete_setting(setting_id: int, request: Request):
        check_api_key(request)
        if not db.delete_setting(setting_id):
            raise HTTPException(status_code=404, detail="Setting not found")
        return {"status": "deleted"}

    @app.get(f"{prefix}/health")
    async def health():
        return {"status": "ok"}

    return app


class WebServer:
    """Runs the app under uvicorn until stopped."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8080):
        self.app = app
        self.host = host
        self.port = port
        self._server: uvicorn.Server | None = None

    async def start(self) -> None:
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="info")
        self._server = uvicorn.Server(config)
        logger.info("Web server starting on %s:%s", self.host, self.port)
        await self._server.serve()

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True
            logger.info("Web server stopped")

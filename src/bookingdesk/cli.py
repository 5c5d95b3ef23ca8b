"""CLI entry point for bookingdesk."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import signal
import sys
from datetime import datetime
from pathlib import Path

from . import __version__

DAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def _parse_day(value: str) -> int:
    """Accept 'monday' / 'mon' / '1' (Sunday = 0)."""
    value = value.strip().lower()
    if value.isdigit() and 0 <= int(value) <= 6:
        return int(value)
    for i, name in enumerate(DAY_NAMES):
        if name.startswith(value) and len(value) >= 3:
            return i
    raise argparse.ArgumentTypeError(f"Unknown day: {value!r}")


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize bookingdesk configuration in the current directory."""
    config_dest = Path("config.yaml")
    env_dest = Path(".env")

    pkg_dir = Path(__file__).parent.parent.parent  # src/bookingdesk -> project root
    config_src = pkg_dir / "config.example.yaml"
    env_src = pkg_dir / ".env.example"

    if config_dest.exists() and not args.force:
        print("config.yaml already exists. Use --force to overwrite.")
    else:
        if config_src.exists():
            shutil.copy(config_src, config_dest)
        else:
            config_dest.write_text(
                "owner:\n  name: \"Your Name\"\n  email: \"${OWNER_EMAIL}\"\n\n"
                "availability:\n  timezone: \"America/New_York\"\n\n"
                "email:\n  resend_api_key: \"${RESEND_API_KEY}\"\n\n"
                "web:\n  app_url: \"${APP_URL}\"\n"
            )
        print(f"Created {config_dest}")

    if env_dest.exists() and not args.force:
        print(".env already exists. Use --force to overwrite.")
    else:
        if env_src.exists():
            shutil.copy(env_src, env_dest)
        else:
            env_dest.write_text("OWNER_EMAIL=\nRESEND_API_KEY=\nAPP_URL=http://localhost:3000\n")
        print(f"Created {env_dest}")

    print("\nNext steps:")
    print("  1. Edit config.yaml with your details")
    print("  2. Edit .env with your API keys")
    print("  3. Connect Google Calendar: bookingdesk auth")
    print("  4. Run: bookingdesk serve")


def cmd_check(args: argparse.Namespace) -> None:
    """Check configuration and external connections."""
    from .config import load_config

    print(f"bookingdesk v{__version__} - connection check\n")

    try:
        config = load_config(args.config)
        print(f"[OK] Config loaded from {args.config} (environment: {config.environment})")
    except Exception as e:
        print(f"[FAIL] Config: {e}")
        sys.exit(1)

    try:
        from .calendar.google_auth import get_google_credentials
        get_google_credentials(config.calendar.credentials_path, config.calendar.token_path)
        print("[OK] Google Calendar authenticated")
    except Exception as e:
        print(f"[FAIL] Google Calendar: {e}")

    if config.email.resend_api_key:
        print(f"[OK] E-mail: Resend, sending as {config.email.from_address}")
    else:
        print("[WARN] E-mail: RESEND_API_KEY not set, e-mails will only be logged")
    if not config.owner.email:
        print("[WARN] Owner e-mail not set, approval requests cannot be delivered")

    if config.security.turnstile_secret_key:
        print("[OK] Turnstile secret configured")
    elif config.is_production:
        print("[FAIL] Turnstile: production requires TURNSTILE_SECRET_KEY, every booking will be refused")
    else:
        print("[--] Turnstile: not enforced outside production")

    if config.rate_limit.redis_url:
        print("[OK] Rate limits: Redis")
    else:
        print("[--] Rate limits: in memory (per process)")


def cmd_auth(args: argparse.Namespace) -> None:
    """Run the Google OAuth consent flow and save the token."""
    from .calendar.google_auth import authorize
    from .config import load_config

    _setup_logging(args.verbose)
    config = load_config(args.config)
    try:
        creds = authorize(config.calendar.credentials_path, config.calendar.token_path)
    except FileNotFoundError as e:
        print(f"[FAIL] {e}")
        sys.exit(1)
    print(f"[OK] Token saved to {config.calendar.token_path}")
    if creds.refresh_token:
        print("\nFor env-based deploys set GOOGLE_REFRESH_TOKEN to:")
        print(f"  {creds.refresh_token}")


def cmd_slots(args: argparse.Namespace) -> None:
    """Display a day's free slots for debugging."""
    from .config import load_config

    config = load_config(args.config)
    try:
        day = datetime.strptime(args.date, "%Y-%m-%d").date()
    except ValueError:
        print(f"Invalid date: {args.date}. Use YYYY-MM-DD.")
        sys.exit(1)
    visitor_tz = args.timezone or config.availability.timezone

    db, availability, _, _ = _build_services(config)

    async def show():
        result = await availability.get_day_availability(day, visitor_tz)
        if result.message:
            print(result.message)
            return
        if not result.slots:
            print("No available slots found.")
            return
        print(f"Available slots on {day} ({visitor_tz}):\n")
        for i, slot in enumerate(result.slots, 1):
            print(f"  {i}. {slot.display_time}")
        print(f"\nTotal: {len(result.slots)} slots")

    try:
        asyncio.run(show())
    except ValueError as e:
        print(f"[FAIL] {e}")
        sys.exit(1)
    finally:
        db.close()


def cmd_settings(args: argparse.Namespace) -> None:
    """Show or change stored working hours."""
    from .config import load_config
    from .database import Database
    from .errors import BookingValidationError
    from .validation import parse_availability_update

    config = load_config(args.config)
    db = Database(config.database_path)
    db.connect()

    try:
        if args.action == "set":
            try:
                update = parse_availability_update({
                    "dayOfWeek": args.day,
                    "startTime": args.start,
                    "endTime": args.end,
                    "slotDurationMinutes": args.duration,
                    "isActive": not args.inactive,
                    "specificDate": args.date or "",
                })
            except BookingValidationError as e:
                for field, messages in e.details.items():
                    print(f"[FAIL] {field}: {'; '.join(messages)}")
                sys.exit(1)
            setting_id = db.upsert_setting(update.to_setting())
            print(f"Saved setting #{setting_id}")
            return

        if args.action == "delete":
            if db.delete_setting(args.id):
                print(f"Deleted setting #{args.id}")
            else:
                print(f"No setting #{args.id}")
            return

        settings = db.get_availability_settings()
        if not settings:
            a = config.availability
            print(
                f"No stored settings. Weekdays default to {a.default_start_time}-{a.default_end_time}, "
                f"{a.slot_duration_minutes} min slots; weekends closed."
            )
            return
        for s in settings:
            when = s.specific_date or DAY_NAMES[s.day_of_week].capitalize()
            state = "" if s.is_active else " (inactive)"
            print(f"  #{s.id} {when}: {s.start_time}-{s.end_time}, {s.slot_duration_minutes} min{state}")
    finally:
        db.close()


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the booking API."""
    from .config import load_config

    config = load_config(args.config)
    if args.dry_run:
        config.dry_run = True

    if config.dry_run:
        print("Running in DRY RUN mode (no calendar events will be created)\n")

    _setup_logging(args.verbose)

    asyncio.run(_serve(config))


async def _serve(config) -> None:
    from .web import WebServer, create_app

    db, availability, bookings, ip_limiter = _build_services(config)
    app = create_app(config, db, availability, bookings, ip_limiter)
    server = WebServer(app, host=config.web.host, port=config.web.port)

    stop_event = asyncio.Event()

    def signal_handler():
        print("\nShutting down...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    task = asyncio.create_task(server.start())
    task.add_done_callback(lambda _: stop_event.set())

    await stop_event.wait()
    await server.stop()
    await task


def _build_services(config):
    """Wire store, calendar, notifier and rate limiters into the engine."""
    from .calendar import DryRunCalendarProvider, GoogleCalendarProvider
    from .core.availability import AvailabilityService
    from .core.booking import BookingManager
    from .database import Database
    from .notifications import EmailNotifier
    from .security import TurnstileVerifier, build_rate_limiters

    db = Database(config.database_path)
    db.connect()

    calendar = GoogleCalendarProvider(config.calendar, config.availability.timezone)
    if config.dry_run:
        calendar = DryRunCalendarProvider(calendar)

    availability = AvailabilityService(config.availability, calendar, db)
    notifier = EmailNotifier(config.email, config.owner, config.availability.timezone)
    ip_limiter, email_limiter = build_rate_limiters(config.rate_limit)

    captcha = None
    if config.is_production:
        if not config.security.turnstile_secret_key:
            logging.getLogger(__name__).error(
                "TURNSTILE_SECRET_KEY is not set; every booking will fail verification"
            )
        captcha = TurnstileVerifier(config.security.turnstile_secret_key)

    bookings = BookingManager(
        config, db, calendar, notifier, email_limiter,
        availability=availability, captcha=captcha,
    )
    return db, availability, bookings, ip_limiter


def main():
    parser = argparse.ArgumentParser(
        prog="bookingdesk",
        description="Meeting requests with e-mail verification and owner approval",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize configuration")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing files")

    # check
    check_parser = subparsers.add_parser("check", help="Check configuration and connections")
    check_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")

    # auth
    auth_parser = subparsers.add_parser("auth", help="Connect Google Calendar (OAuth)")
    auth_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    auth_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # slots
    slots_parser = subparsers.add_parser("slots", help="Show free slots for a day")
    slots_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    slots_parser.add_argument("--date", required=True, help="Day to show (YYYY-MM-DD)")
    slots_parser.add_argument("--timezone", default=None, help="Visitor timezone (IANA)")

    # settings
    settings_parser = subparsers.add_parser("settings", help="Show or change working hours")
    settings_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    settings_sub = settings_parser.add_subparsers(dest="action")
    set_parser = settings_sub.add_parser("set", help="Set hours for a weekday or date")
    set_parser.add_argument("day", type=_parse_day, help="Day of week (monday or 1, Sunday = 0)")
    set_parser.add_argument("start", help="Start time HH:MM")
    set_parser.add_argument("end", help="End time HH:MM")
    set_parser.add_argument("--duration", type=int, default=30, help="Slot length in minutes (15-120)")
    set_parser.add_argument("--inactive", action="store_true", help="Mark the day unavailable")
    set_parser.add_argument("--date", default=None, help="Override one date (YYYY-MM-DD) instead of the weekday")
    delete_parser = settings_sub.add_parser("delete", help="Remove a stored setting")
    delete_parser.add_argument("id", type=int, help="Setting id as shown by 'bookingdesk settings'")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the booking API")
    serve_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    serve_parser.add_argument("--dry-run", action="store_true", help="Don't create calendar events")
    serve_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    commands = {
        "init": cmd_init,
        "check": cmd_check,
        "auth": cmd_auth,
        "slots": cmd_slots,
        "settings": cmd_settings,
        "serve": cmd_serve,
    }
    commands[args.command](args)

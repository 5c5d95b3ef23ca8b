"""Configuration loading from YAML + environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv


@dataclass
class OwnerConfig:
    name: str = "Owner"
    email: str = ""


@dataclass
class AvailabilityConfig:
    timezone: str = "America/New_York"
    default_start_time: str = "09:00"
    default_end_time: str = "20:00"
    slot_duration_minutes: int = 30
    buffer_minutes: int = 60  # slots must start later than now + buffer
    lead_business_days: int = 2
    max_days_ahead: int = 60
    max_weeks_ahead: int = 10
    verification_ttl_hours: int = 24
    prevent_double_booking: bool = False


@dataclass
class CalendarConfig:
    credentials_path: str = "credentials.json"
    token_path: str = "token.json"
    calendar_ids: list[str] = field(default_factory=list)  # empty = every calendar in the account
    target_calendar_id: str = "primary"


@dataclass
class EmailConfig:
    resend_api_key: str = ""
    from_address: str = "Bookings <onboarding@resend.dev>"


@dataclass
class SecurityConfig:
    turnstile_secret_key: str = ""


@dataclass
class RateLimitConfig:
    redis_url: str = ""
    ip_limit: int = 10
    ip_window_seconds: int = 3600
    email_limit: int = 3
    email_window_seconds: int = 86400


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    app_url: str = "http://localhost:3000"
    api_prefix: str = "/api"
    api_key: str = ""  # enables the admin availability API
    allowed_origins: list[str] = field(default_factory=list)


@dataclass
class Config:
    owner: OwnerConfig = field(default_factory=OwnerConfig)
    availability: AvailabilityConfig = field(default_factory=AvailabilityConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    web: WebConfig = field(default_factory=WebConfig)
    database_path: str = "bookingdesk.db"
    environment: str = "development"
    dry_run: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def _resolve_env_vars(value: str) -> str:
    """Replace ${VAR} with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _resolve_dict(d: dict) -> dict:
    """Recursively resolve env vars in a dict."""
    resolved = {}
    for k, v in d.items():
        if isinstance(v, str):
            resolved[k] = _resolve_env_vars(v)
        elif isinstance(v, dict):
            resolved[k] = _resolve_dict(v)
        elif isinstance(v, list):
            resolved[k] = [_resolve_env_vars(i) if isinstance(i, str) else i for i in v]
        else:
            resolved[k] = v
    return resolved


def _unset(value: str) -> str:
    """Treat an unresolved ${VAR} placeholder as empty."""
    return "" if re.fullmatch(r"\$\{\w+\}", value or "") else (value or "")


def load_config(config_path: str | Path, env_path: str | Path | None = None) -> Config:
    """Load config from YAML file with env var resolution."""
    config_path = Path(config_path).resolve()
    config_dir = config_path.parent

    if env_path:
        load_dotenv(env_path)
    else:
        # Look for .env next to config file first, then CWD
        env_beside_config = config_dir / ".env"
        if env_beside_config.exists():
            load_dotenv(env_beside_config)
        else:
            load_dotenv()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _resolve_dict(raw)

    owner_data = raw.get("owner", {})
    owner = OwnerConfig(
        name=owner_data.get("name", "Owner"),
        email=_unset(owner_data.get("email", "")),
    )

    avail_data = raw.get("availability", {})
    availability = AvailabilityConfig(
        timezone=avail_data.get("timezone", "America/New_York"),
        default_start_time=avail_data.get("default_start_time", "09:00"),
        default_end_time=avail_data.get("default_end_time", "20:00"),
        slot_duration_minutes=int(avail_data.get("slot_duration_minutes", 30)),
        buffer_minutes=int(avail_data.get("buffer_minutes", 60)),
        lead_business_days=int(avail_data.get("lead_business_days", 2)),
        max_days_ahead=int(avail_data.get("max_days_ahead", 60)),
        max_weeks_ahead=int(avail_data.get("max_weeks_ahead", 10)),
        verification_ttl_hours=int(avail_data.get("verification_ttl_hours", 24)),
        prevent_double_booking=bool(avail_data.get("prevent_double_booking", False)),
    )

    cal_data = raw.get("calendar", {})
    calendar_ids = cal_data.get("calendar_ids", [])
    if isinstance(calendar_ids, str):
        calendar_ids = [c.strip() for c in _unset(calendar_ids).split(",") if c.strip()]
    calendar = CalendarConfig(
        credentials_path=cal_data.get("credentials_path", "credentials.json"),
        token_path=cal_data.get("token_path", "token.json"),
        calendar_ids=[c for c in calendar_ids if _unset(c)],
        target_calendar_id=_unset(cal_data.get("target_calendar_id", "")) or "primary",
    )

    email_data = raw.get("email", {})
    email = EmailConfig(
        resend_api_key=_unset(email_data.get("resend_api_key", "")),
        from_address=_unset(email_data.get("from_address", "")) or EmailConfig.from_address,
    )

    sec_data = raw.get("security", {})
    security = SecurityConfig(
        turnstile_secret_key=_unset(sec_data.get("turnstile_secret_key", "")),
    )

    rl_data = raw.get("rate_limit", {})
    rate_limit = RateLimitConfig(
        redis_url=_unset(rl_data.get("redis_url", "")),
        ip_limit=int(rl_data.get("ip_limit", 10)),
        ip_window_seconds=int(rl_data.get("ip_window_seconds", 3600)),
        email_limit=int(rl_data.get("email_limit", 3)),
        email_window_seconds=int(rl_data.get("email_window_seconds", 86400)),
    )

    web_data = raw.get("web", {})
    port = int(web_data.get("port", 8080))
    if not (1 <= port <= 65535):
        raise ValueError(f"Invalid web port: {port}. Must be 1-65535.")
    web = WebConfig(
        host=web_data.get("host", "0.0.0.0"),
        port=port,
        app_url=(_unset(web_data.get("app_url", "")) or WebConfig.app_url).rstrip("/"),
        api_prefix=web_data.get("api_prefix", "/api").rstrip("/"),
        api_key=_unset(web_data.get("api_key", "")),
        allowed_origins=web_data.get("allowed_origins", []),
    )

    database_path = os.environ.get("DATABASE_PATH") or raw.get("database_path", "bookingdesk.db")
    environment = os.environ.get("BOOKINGDESK_ENV") or raw.get("environment", "development")
    dry_run = os.environ.get("DRY_RUN", "").lower() in ("true", "1", "yes")

    return Config(
        owner=owner,
        availability=availability,
        calendar=calendar,
        email=email,
        security=security,
        rate_limit=rate_limit,
        web=web,
        database_path=database_path,
        environment=environment,
        dry_run=dry_run,
    )

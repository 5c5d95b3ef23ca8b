"""Google OAuth authentication for Calendar API."""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _load_json_from_env_or_file(env_var: str, file_path: str) -> dict | None:
    """Load JSON from a base64-encoded env var, falling back to a file."""
    env_value = os.environ.get(env_var)
    if env_value:
        try:
            return json.loads(base64.b64decode(env_value))
        except ValueError:
            # Try as plain JSON
            try:
                return json.loads(env_value)
            except ValueError:
                logger.warning("Failed to parse %s env var", env_var)
    path = Path(file_path)
    if path.exists():
        return json.loads(path.read_text())
    return None


def _credentials_from_refresh_token() -> Credentials | None:
    """Owner credentials from GOOGLE_CLIENT_ID / _SECRET / _REFRESH_TOKEN, if all set."""
    client_id = os.environ.get("GOOGLE_CLIENT_ID")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET")
    refresh_token = os.environ.get("GOOGLE_REFRESH_TOKEN")
    if not (client_id and client_secret and refresh_token):
        return None
    return Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=TOKEN_URI,
        client_id=client_id,
        client_secret=client_secret,
        scopes=SCOPES,
    )


def get_google_credentials(
    credentials_path: str = "credentials.json",
    token_path: str = "token.json",
) -> Credentials:
    """Get or refresh the owner's Google OAuth credentials.

    Lookup order: a refresh token in the environment, then a saved token
    (GOOGLE_TOKEN_JSON env var as base64 JSON, or ``token_path``). The
    service never starts an interactive consent flow on its own; run
    ``bookingdesk auth`` once to create the token.

    Raises:
        FileNotFoundError: if no usable credentials exist.
    """
    creds = _credentials_from_refresh_token()

    if creds is None:
        token_data = _load_json_from_env_or_file("GOOGLE_TOKEN_JSON", token_path)
        if token_data:
            creds = Credentials(
                token=token_data.get("token"),
                refresh_token=token_data.get("refresh_token"),
                token_uri=token_data.get("token_uri", TOKEN_URI),
                client_id=token_data.get("client_id"),
                client_secret=token_data.get("client_secret"),
                scopes=token_data.get("scopes", SCOPES),
            )

    if creds is None:
        raise FileNotFoundError(
            f"Google token not found in GOOGLE_REFRESH_TOKEN, GOOGLE_TOKEN_JSON or {token_path}. "
            f"Run 'bookingdesk auth' with the OAuth client in {credentials_path}."
        )

    if not creds.valid and creds.refresh_token:
        logger.info("Refreshing Google access token")
        creds.refresh(Request())

    return creds


def authorize(credentials_path: str = "credentials.json", token_path: str = "token.json") -> Credentials:
    """Run the installed-app consent flow and save the resulting token."""
    creds_data = _load_json_from_env_or_file("GOOGLE_CREDENTIALS_JSON", credentials_path)
    if not creds_data:
        raise FileNotFoundError(
            f"Google OAuth client not found in GOOGLE_CREDENTIALS_JSON env var or {credentials_path}"
        )
    flow = InstalledAppFlow.from_client_config(creds_data, SCOPES)
    creds = flow.run_local_server(port=0, access_type="offline", prompt="consent")
    _save_token(creds, token_path)
    return creds


def _save_token(creds: Credentials, token_path: str) -> None:
    """Save token to file."""
    token_data = {
        "token": creds.token,
        "refresh_token": creds.refresh_token,
        "token_uri": creds.token_uri,
        "client_id": creds.client_id,
        "client_secret": creds.client_secret,
        "scopes": list(creds.scopes or SCOPES),
    }
    try:
        Path(token_path).write_text(json.dumps(token_data, indent=2))
        logger.info("Token saved to %s", token_path)
    except OSError:
        logger.warning("Could not save token to %s", token_path)

# oauth.py — Google OAuth 2.0 authorization-code flow
"""
Federated sign-in against Google.

The browser is sent to Google with a signed, short-lived ``state`` value
(HS256 JWT carrying a nonce). The callback checks that value, exchanges the
authorization code for tokens and reads the userinfo profile. Provider
failures surface as ``httpx.HTTPError``; there is no retry.
"""
import logging
import secrets
import time
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import HTTPException
from jose import jwt, JWTError

from auth import FederatedProfile
from config import get_settings

logger = logging.getLogger("taskhub.oauth")

settings = get_settings()

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_SCOPES = "openid email profile"

STATE_ALGORITHM = "HS256"
STATE_COOKIE_NAME = "taskhub_oauth_state"


def create_state() -> str:
    now = int(time.time())
    payload = {
        "nonce": secrets.token_urlsafe(16),
        "iat": now,
        "exp": now + settings.OAUTH_STATE_EXPIRE_SECONDS,
    }
    return jwt.encode(payload, settings.SESSION_SECRET, algorithm=STATE_ALGORITHM)


def verify_state(state: Optional[str], expected: Optional[str]) -> bool:
    """The state must match the one issued to this browser and still be valid."""
    if not state or not expected or not secrets.compare_digest(state, expected):
        return False
    try:
        jwt.decode(state, settings.SESSION_SECRET, algorithms=[STATE_ALGORITHM])
    except JWTError:
        return False
    return True


class GoogleOAuthProvider:
    name = "google"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._transport = transport
        self._timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def fetch_profile(self, code: str) -> FederatedProfile:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            token_resp = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
            token_resp.raise_for_status()
            access_token = token_resp.json().get("access_token")
            if not access_token:
                raise httpx.HTTPError("Token response did not include an access token")

            info_resp = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            info_resp.raise_for_status()
            info = info_resp.json()

        if not info.get("email"):
            logger.warning(f"Google profile {info.get('sub')} has no email claim")

        return FederatedProfile(
            provider=self.name,
            provider_id=str(info.get("sub", "")),
            email=info.get("email") or None,
            name=info.get("name") or None,
            avatar=info.get("picture") or None,
        )


def get_oauth_provider() -> GoogleOAuthProvider:
    """Dependency: the configured Google provider, or 503 when disabled."""
    if not settings.google_oauth_enabled:
        raise HTTPException(status_code=503, detail="Google sign-in is not configured")
    return GoogleOAuthProvider(
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        redirect_uri=settings.GOOGLE_CALLBACK_URL,
    )

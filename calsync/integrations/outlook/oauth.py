import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import requests

from calsync.core.config import settings
from calsync.core.constants import (
    OUTLOOK_AUTHORIZE_URL,
    OUTLOOK_SCOPE,
    OUTLOOK_TOKEN_URL,
    Provider,
)
from calsync.core.exceptions import ConfigurationError, TransientError, UnauthorizedError
from calsync.core.logging import LogRateLimiter, redact
from calsync.integrations.http import send
from calsync.schemas.calendar import TokenSet
from calsync.utils.time import utcnow

logger = logging.getLogger(__name__)

_PROVIDER = Provider.OUTLOOK.value
_missing_config_log = LogRateLimiter()


class OutlookOAuthClient:
    """Microsoft identity platform authorization code and refresh flows."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    @staticmethod
    def get_client_config() -> Tuple[str, str]:
        if not settings.OUTLOOK_CLIENT_ID or not settings.OUTLOOK_CLIENT_SECRET:
            _missing_config_log.log(
                logger, logging.ERROR, "outlook-client-config",
                "Outlook OAuth client credentials are not configured",
            )
            raise ConfigurationError("Outlook OAuth client is not configured", provider=_PROVIDER)
        return settings.OUTLOOK_CLIENT_ID, settings.OUTLOOK_CLIENT_SECRET

    @staticmethod
    def redirect_uri() -> str:
        return f"{settings.SERVER_HOST}{settings.API_V1_STR}/auth/outlook/callback"

    def authorization_url(self, state: str) -> str:
        client_id, _ = self.get_client_config()
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri(),
            "response_mode": "query",
            "scope": OUTLOOK_SCOPE,
            "state": state,
        }
        return f"{OUTLOOK_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> TokenSet:
        client_id, client_secret = self.get_client_config()
        payload = self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri(),
                "client_id": client_id,
                "client_secret": client_secret,
                "scope": OUTLOOK_SCOPE,
            }
        )
        return self._token_set(payload, previous_refresh_token=None)

    def refresh(self, refresh_token: Optional[str], scope: Optional[str] = None) -> TokenSet:
        """
        Exchange a refresh token.

        Microsoft normally rotates the refresh token; the previous one is kept
        if a response ever omits it.
        """
        if not refresh_token:
            raise UnauthorizedError("No refresh token available", provider=_PROVIDER)
        client_id, client_secret = self.get_client_config()
        payload = self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "scope": scope or OUTLOOK_SCOPE,
            }
        )
        return self._token_set(payload, previous_refresh_token=refresh_token)

    def _post_token(self, form: Dict[str, str]) -> Dict[str, Any]:
        response = send(
            self.session, "POST", OUTLOOK_TOKEN_URL, provider=_PROVIDER, data=form
        )
        if response.status_code == 400:
            raise UnauthorizedError(
                f"Token refresh failed: {redact(response.text)}", provider=_PROVIDER
            )
        if response.status_code != 200:
            raise TransientError(
                f"Outlook token endpoint returned HTTP {response.status_code}",
                provider=_PROVIDER,
            )
        try:
            return response.json()
        except ValueError as e:
            raise TransientError("Outlook token endpoint returned invalid JSON", provider=_PROVIDER) from e

    @staticmethod
    def _token_set(payload: Dict[str, Any], previous_refresh_token: Optional[str]) -> TokenSet:
        if not payload.get("access_token"):
            raise TransientError("Outlook token response has no access token", provider=_PROVIDER)
        expires_in = int(payload.get("expires_in") or 3600)
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            scope=payload.get("scope"),
        )

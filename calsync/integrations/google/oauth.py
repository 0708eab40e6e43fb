import json
import logging
from datetime import timedelta
from typing import Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from calsync.core.config import settings
from calsync.core.constants import GOOGLE_CALENDAR_SCOPES, GOOGLE_TOKEN_URI, Provider
from calsync.core.exceptions import ConfigurationError, TransientError, UnauthorizedError
from calsync.core.logging import LogRateLimiter
from calsync.schemas.calendar import TokenSet
from calsync.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_missing_config_log = LogRateLimiter()


class GoogleOAuthClient:
    """Client for Google OAuth authentication."""

    @staticmethod
    def get_client_config() -> Tuple[Optional[str], Optional[str]]:
        """Client ID and secret from settings, falling back to the secrets JSON."""
        if settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET:
            return settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET
        if not settings.GOOGLE_CLIENT_SECRETS_JSON:
            _missing_config_log.log(
                logger, logging.ERROR, "google-client-config",
                "Google OAuth client credentials are not configured",
            )
            return None, None
        try:
            client_secrets = json.loads(settings.GOOGLE_CLIENT_SECRETS_JSON)
            web_config = client_secrets.get("web") or client_secrets.get("installed") or {}
        except (json.JSONDecodeError, AttributeError) as e:
            logger.error(f"Error parsing client secrets JSON: {e}")
            return None, None

        client_id = web_config.get("client_id")
        client_secret = web_config.get("client_secret")
        if not client_id or not client_secret:
            _missing_config_log.log(
                logger, logging.ERROR, "google-client-config",
                "Missing client_id or client_secret in GOOGLE_CLIENT_SECRETS_JSON",
            )
            return None, None
        return client_id, client_secret

    @staticmethod
    def _require_client_config() -> Tuple[str, str]:
        client_id, client_secret = GoogleOAuthClient.get_client_config()
        if not client_id or not client_secret:
            raise ConfigurationError(
                "Google OAuth client is not configured", provider=Provider.GOOGLE.value
            )
        return client_id, client_secret

    @staticmethod
    def create_oauth_flow(state: Optional[str] = None, redirect_uri: Optional[str] = None) -> Flow:
        """Create the OAuth authorization flow for Google Calendar."""
        client_id, client_secret = GoogleOAuthClient._require_client_config()
        if not redirect_uri:
            redirect_uri = f"{settings.SERVER_HOST}{settings.API_V1_STR}/auth/google/callback"

        client_config = {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": GOOGLE_TOKEN_URI,
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=GOOGLE_CALENDAR_SCOPES,
            redirect_uri=redirect_uri,
            state=state,
        )

    @staticmethod
    def authorization_url(state: str) -> str:
        flow = GoogleOAuthClient.create_oauth_flow(state=state)
        url, _ = flow.authorization_url(
            access_type="offline", include_granted_scopes="true", prompt="consent"
        )
        return url

    @staticmethod
    def exchange_code(code: str) -> TokenSet:
        """Exchange authorization code for tokens."""
        flow = GoogleOAuthClient.create_oauth_flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"Google authorization code exchange failed: {e}")
            raise UnauthorizedError(
                f"Google authorization failed: {e}", provider=Provider.GOOGLE.value
            ) from e
        return GoogleOAuthClient._token_set(flow.credentials)

    @staticmethod
    def get_credentials(access_token: Optional[str], refresh_token: Optional[str] = None) -> Credentials:
        """Create Google OAuth credentials from stored tokens."""
        client_id, client_secret = GoogleOAuthClient._require_client_config()
        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=GOOGLE_CALENDAR_SCOPES,
        )

    @staticmethod
    def refresh(refresh_token: Optional[str]) -> TokenSet:
        """
        Exchange a refresh token for a new access token.

        Google rarely rotates refresh tokens, so the one passed in is kept
        when the response does not carry a new one.
        """
        if not refresh_token:
            raise UnauthorizedError(
                "No refresh token available", provider=Provider.GOOGLE.value
            )
        credentials = GoogleOAuthClient.get_credentials(None, refresh_token)
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            if getattr(e, "retryable", False):
                raise TransientError(
                    f"Google token refresh failed: {e}", provider=Provider.GOOGLE.value
                ) from e
            raise UnauthorizedError(
                f"Google token refresh rejected: {e}", provider=Provider.GOOGLE.value
            ) from e
        except TransportError as e:
            raise TransientError(
                f"Google token endpoint unreachable: {e}", provider=Provider.GOOGLE.value
            ) from e

        tokens = GoogleOAuthClient._token_set(credentials)
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    @staticmethod
    def _token_set(credentials: Credentials) -> TokenSet:
        # google-auth reports expiry as naive UTC
        expiry = ensure_utc(credentials.expiry) or utcnow() + timedelta(hours=1)
        scopes = credentials.scopes or GOOGLE_CALENDAR_SCOPES
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=expiry,
            scope=" ".join(scopes),
        )

import os
import time
import logging
from datetime import datetime
from typing import Optional

from spotipy.oauth2 import SpotifyOAuth

from megalist.crosscutting.config import DEFAULT_REDIRECT_URI, SecretManager, get_secret_manager
from megalist.domain.errors import AuthenticationError

logger = logging.getLogger(__name__)

# Refresh this long before the recorded expiry
_EXPIRY_MARGIN_SEC = 60


class SessionTokenProvider:
    """Supplies a valid Spotify bearer token for every request.

    Tokens come from the constructor, the environment or ``tokens.json``.
    When an expiry is known and passed, the token is refreshed once through
    spotipy's OAuth manager; otherwise the stored token is returned as is.
    """

    def __init__(self,
                 access_token: Optional[str] = None,
                 refresh_token: Optional[str] = None,
                 expires_at: Optional[datetime] = None,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 secret_manager: Optional[SecretManager] = None):
        self._secret_manager = secret_manager
        stored = {}
        if access_token is None and secret_manager is not None:
            stored = secret_manager.get_spotify_tokens() or {}

        self.access_token = access_token or os.getenv('SPOTIFY_ACCESS_TOKEN') or stored.get('access_token')
        self.refresh_token = refresh_token or os.getenv('SPOTIFY_REFRESH_TOKEN') or stored.get('refresh_token')
        self.expires_at = expires_at
        if self.expires_at is None and stored.get('expires_at'):
            self.expires_at = datetime.fromtimestamp(float(stored['expires_at']))
        self.client_id = client_id or os.getenv('SPOTIFY_CLIENT_ID')
        self.client_secret = client_secret or os.getenv('SPOTIFY_CLIENT_SECRET')

        self._last_refresh_attempt = 0.0
        self._refresh_cooldown = 5  # seconds between refresh attempts

    @classmethod
    def from_config(cls, secret_manager: Optional[SecretManager] = None) -> "SessionTokenProvider":
        """Build a provider from the environment and stored tokens."""
        return cls(secret_manager=secret_manager or get_secret_manager())

    def _is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return (self.expires_at - datetime.now()).total_seconds() < _EXPIRY_MARGIN_SEC

    def get_access_token(self) -> str:
        """Return a bearer token or raise AuthenticationError."""
        if self.access_token and not self._is_expired():
            return self.access_token

        if self.refresh_token and self._refresh_access_token():
            return self.access_token

        if self.access_token and self._is_expired():
            raise AuthenticationError("Spotify access token expired and could not be refreshed")
        raise AuthenticationError("No Spotify access token available")

    def _refresh_access_token(self) -> bool:
        """Refresh the access token. Return True on success."""
        current_time = time.time()
        if current_time - self._last_refresh_attempt < self._refresh_cooldown:
            return False
        self._last_refresh_attempt = current_time

        if not self.client_id or not self.client_secret:
            logger.warning("Cannot refresh token: missing client credentials")
            return False

        try:
            logger.info("Refreshing Spotify access token...")
            oauth_manager = SpotifyOAuth(
                client_id=self.client_id,
                client_secret=self.client_secret,
                redirect_uri=os.getenv('SPOTIFY_REDIRECT_URI') or DEFAULT_REDIRECT_URI,
                scope='playlist-read-private playlist-modify-public playlist-modify-private',
            )
            token_info = oauth_manager.refresh_access_token(self.refresh_token)
        except Exception as e:
            logger.error(f"Failed to refresh Spotify token: {e}")
            return False

        if not token_info or 'access_token' not in token_info:
            logger.error("Failed to refresh token: invalid response")
            return False

        self.access_token = token_info['access_token']
        if token_info.get('refresh_token'):
            self.refresh_token = token_info['refresh_token']
        if 'expires_at' in token_info:
            self.expires_at = datetime.fromtimestamp(token_info['expires_at'])

        if self._secret_manager is not None:
            self._secret_manager.save_spotify_tokens(
                self.access_token,
                self.refresh_token,
                expires_at=token_info.get('expires_at'),
            )

        logger.info("Spotify access token refreshed successfully")
        return True

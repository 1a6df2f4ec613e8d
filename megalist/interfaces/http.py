import os
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import requests
from flask import Flask, jsonify, request

from megalist.application.cache import PlaylistCache
from megalist.application.checkpoints import FileCheckpointStore
from megalist.application.executor import BatchExecutor
from megalist.application.poller import ConsistencyPoller
from megalist.application.service import MegalistService
from megalist.crosscutting.config import (
    DEFAULT_REDIRECT_URI, ConfigError, SecretManager, Settings, get_secret_manager,
)
from megalist.crosscutting.logging import setup_logging
from megalist.domain.errors import (
    AuthenticationError, MegalistError, MegalistNotFound, MegalistNotSyncable, PlaylistApiError,
)
from megalist.infrastructure.auth import SessionTokenProvider
from megalist.infrastructure.persistence import JsonMegalistRepository
from megalist.infrastructure.providers.spotify import SpotifyPlaylistClient


SPOTIFY_AUTHORIZE_URL = 'https://accounts.spotify.com/authorize'
SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'


class HTTPServer:
    """HTTP server for Megalist with health checks, OAuth callback and sync endpoints."""

    def __init__(self,
                 host: str = 'localhost',
                 port: int = 3000,
                 debug: bool = False,
                 service: Optional[MegalistService] = None,
                 service_factory: Optional[Callable[[], MegalistService]] = None,
                 secret_manager: Optional[SecretManager] = None):
        """Initialize HTTP server.

        Args:
            host: Interface to bind
            port: Port to bind
            debug: Flask debug mode
            service: Service used by the megalist endpoints
            service_factory: Builds the service on first use when ``service`` is not given
            secret_manager: Where OAuth tokens are stored
        """
        self.host = host
        self.port = port
        self.debug = debug
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.version = "0.1.0"
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self._service = service
        self._service_factory = service_factory
        self._secret_manager = secret_manager

        self._setup_routes()

    @property
    def secret_manager(self) -> SecretManager:
        if self._secret_manager is None:
            self._secret_manager = get_secret_manager()
        return self._secret_manager

    @property
    def service(self) -> MegalistService:
        if self._service is None:
            if self._service_factory is None:
                raise RuntimeError("Megalist service not configured")
            self._service = self._service_factory()
        return self._service

    @staticmethod
    def _redirect_uri() -> str:
        return os.getenv('SPOTIFY_REDIRECT_URI') or DEFAULT_REDIRECT_URI

    def _error_response(self, error: Exception):
        """Map a domain error onto an HTTP status."""
        if isinstance(error, AuthenticationError):
            status = 401
        elif isinstance(error, MegalistNotFound):
            status = 404
        elif isinstance(error, MegalistNotSyncable):
            status = 409
        elif isinstance(error, PlaylistApiError) and error.http_status:
            status = 502 if error.http_status >= 500 else error.http_status
        else:
            status = 500
        return jsonify({'error': type(error).__name__, 'details': str(error)}), status

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/auth/spotify', methods=['GET'])
        def spotify_auth():
            """Initiate Spotify OAuth flow."""
            spotify_client_id = os.getenv('SPOTIFY_CLIENT_ID')
            if not spotify_client_id:
                return jsonify({
                    'error': 'Spotify client ID not configured'
                }), 500

            redirect_uri = self._redirect_uri()
            auth_url = f"{SPOTIFY_AUTHORIZE_URL}?" + urlencode({
                'client_id': spotify_client_id,
                'response_type': 'code',
                'redirect_uri': redirect_uri,
                'scope': self.secret_manager.get_spotify_scope_string(),
                'show_dialog': 'true',
            })
            return jsonify({
                'auth_url': auth_url,
                'redirect_uri': redirect_uri
            }), 200

        @self.app.route('/callback', methods=['GET'])
        def oauth_callback():
            """OAuth callback endpoint for Spotify."""
            code = request.args.get('code')
            error = request.args.get('error')

            if error:
                self.logger.error(f"OAuth error: {error}")
                return jsonify({
                    'error': 'OAuth authorization failed',
                    'details': error
                }), 400

            if not code:
                return jsonify({
                    'error': 'Missing authorization code'
                }), 400

            tokens = self._exchange_code_for_tokens(code)
            if not tokens:
                return jsonify({
                    'error': 'Failed to exchange code for tokens'
                }), 500

            self.secret_manager.save_spotify_tokens(
                tokens['access_token'], tokens.get('refresh_token'), tokens.get('expires_at'),
            )
            self.logger.info("OAuth tokens saved successfully")
            return jsonify({
                'status': 'success',
                'message': 'OAuth tokens saved successfully',
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/megalists/preview', methods=['POST'])
        def preview_sync():
            """Added/removed counts for the given megalists, nothing is changed."""
            payload = request.get_json(silent=True) or {}
            playlist_ids = payload.get('playlistIds') or []
            if not isinstance(playlist_ids, list) or not playlist_ids:
                return jsonify({'error': 'playlistIds must be a non-empty list'}), 400
            try:
                preview = self.service.preview_sync(playlist_ids)
            except MegalistError as e:
                return self._error_response(e)
            return jsonify({
                'added': preview.added,
                'removed': preview.removed,
                'playlistIds': preview.playlist_ids,
                'upToDate': preview.is_up_to_date,
            }), 200

        @self.app.route('/megalists/<playlist_id>/sync', methods=['POST'])
        def sync_megalist(playlist_id: str):
            """Apply a sync; requires ``confirm: true`` after a preview."""
            payload = request.get_json(silent=True) or {}
            if payload.get('confirm') is not True:
                return jsonify({'error': 'Sync must be confirmed with {"confirm": true}'}), 400
            try:
                result = self.service.sync_megalist(playlist_id, shuffle_after=bool(payload.get('shuffle')))
            except MegalistError as e:
                self.logger.error(f"Sync of {playlist_id} failed: {e}")
                return self._error_response(e)
            return jsonify({
                'playlistId': result.playlist_id,
                'added': result.added,
                'removed': result.removed,
                'finalTrackCount': result.final_track_count,
                'sourcePlaylistIds': result.valid_source_ids,
                'changed': result.changed,
                'shuffled': result.shuffled,
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            """Root endpoint with basic info."""
            return jsonify({
                'service': 'Megalist HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'spotify_auth': '/auth/spotify',
                    'oauth_callback': '/callback',
                    'preview': '/megalists/preview',
                    'sync': '/megalists/<id>/sync'
                }
            }), 200

    def _exchange_code_for_tokens(self, code: str) -> Optional[Dict[str, Any]]:
        """Exchange authorization code for access and refresh tokens."""
        try:
            client_config = self.secret_manager.get_spotify_client_config()
        except ConfigError as e:
            self.logger.error(f"Spotify client credentials not configured: {e}")
            return None

        data = {
            'grant_type': 'authorization_code',
            'code': code,
            **client_config,
        }
        try:
            response = requests.post(SPOTIFY_TOKEN_URL, data=data, timeout=15)
        except requests.RequestException as e:
            self.logger.error(f"Token exchange error: {e}")
            return None

        if response.status_code != 200:
            self.logger.error(f"Token exchange failed: {response.status_code} - {response.text}")
            return None

        tokens = response.json()
        granted = tokens.get('scope')
        if granted is not None and not self.secret_manager.validate_spotify_scopes(granted):
            self.logger.error(f"Granted scopes do not allow playlist editing: {granted}")
            return None

        return {
            'access_token': tokens.get('access_token'),
            'refresh_token': tokens.get('refresh_token'),
            'expires_in': tokens.get('expires_in'),
            'scope': tokens.get('scope'),
            'expires_at': datetime.now().timestamp() + tokens.get('expires_in', 3600)
        }

    def _setup_logging(self) -> None:
        """Structured JSON logs for the long-running server process."""
        setup_logging(
            os.getenv('MEGALIST_LOG_LEVEL', 'INFO'),
            log_file=os.getenv('MEGALIST_LOG_FILE'),
        )

    def run(self) -> None:
        """Run the HTTP server."""
        self._setup_logging()
        self.logger.info(f"Starting Megalist HTTP server on {self.host}:{self.port}")
        self.app.run(
            host=self.host,
            port=self.port,
            debug=self.debug
        )


def build_service() -> MegalistService:
    """Service wired from configuration, with a poller for newly created playlists."""
    secret_manager = get_secret_manager()
    settings = Settings.from_env(secret_manager)
    client = SpotifyPlaylistClient(token_provider=SessionTokenProvider.from_config(secret_manager))
    cache = PlaylistCache()
    poller = ConsistencyPoller(
        client, cache=cache,
        interval=settings.poll_interval_sec, timeout=settings.poll_timeout_sec,
    )
    executor = BatchExecutor(
        client,
        checkpoint_store=FileCheckpointStore(settings.checkpoint_dir),
        max_workers=settings.max_workers,
    )
    return MegalistService(
        client,
        JsonMegalistRepository(settings.registry_path),
        executor=executor,
        poller=poller,
        cache=cache,
        max_workers=settings.max_workers,
    )


def create_app(service: Optional[MegalistService] = None,
               secret_manager: Optional[SecretManager] = None) -> Flask:
    """Create Flask app for testing."""
    server = HTTPServer(service=service, service_factory=build_service, secret_manager=secret_manager)
    return server.app


if __name__ == '__main__':
    server = HTTPServer(service_factory=build_service)
    server.run()

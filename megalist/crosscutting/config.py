import os
import json
from dataclasses import dataclass
from typing import Dict, Any, Optional
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_REDIRECT_URI = 'http://localhost:3000/callback'


class ConfigError(Exception):
    """Configuration error."""
    pass


class SecretManager:
    """Manages application secrets and on-disk state locations."""

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize secret manager."""
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.megalist'
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.tokens_file = self.config_dir / 'tokens.json'
        self.registry_file = self.config_dir / 'megalists.json'
        self.checkpoint_dir = self.config_dir / 'checkpoints'

    def get_spotify_scopes(self) -> list:
        """Get minimal required Spotify scopes."""
        return [
            'playlist-read-private',      # Read private playlists
            'playlist-modify-public',     # Create/modify public playlists
            'playlist-modify-private',    # Create/modify private playlists
        ]

    def get_spotify_scope_string(self) -> str:
        """Get Spotify scopes as space-separated string."""
        return ' '.join(self.get_spotify_scopes())

    def validate_spotify_scopes(self, scopes: str) -> bool:
        """Validate that provided scopes include all required ones."""
        provided_scopes = set(scopes.replace(',', ' ').split())
        return set(self.get_spotify_scopes()).issubset(provided_scopes)

    def load_tokens(self) -> Dict[str, Any]:
        """Load tokens from tokens.json file."""
        if not self.tokens_file.exists():
            return {}

        try:
            with open(self.tokens_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load tokens from {self.tokens_file}: {e}")

    def save_tokens(self, tokens: Dict[str, Any]) -> None:
        """Merge tokens into tokens.json."""
        existing_tokens = self.load_tokens()
        existing_tokens.update(tokens)
        try:
            with open(self.tokens_file, 'w') as f:
                json.dump(existing_tokens, f, indent=2, ensure_ascii=False)
        except IOError as e:
            raise ConfigError(f"Failed to save tokens to {self.tokens_file}: {e}")

    def get_spotify_tokens(self) -> Optional[Dict[str, Any]]:
        """Get Spotify tokens from tokens.json."""
        return self.load_tokens().get('spotify')

    def save_spotify_tokens(self, access_token: str, refresh_token: Optional[str],
                            expires_at: Optional[float] = None) -> None:
        """Save Spotify tokens."""
        entry: Dict[str, Any] = {
            'access_token': access_token,
            'refresh_token': refresh_token,
        }
        if expires_at is not None:
            entry['expires_at'] = expires_at
        self.save_tokens({'spotify': entry})

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Get Spotify client configuration from environment."""
        client_id = os.getenv('SPOTIFY_CLIENT_ID')
        client_secret = os.getenv('SPOTIFY_CLIENT_SECRET')

        if not client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        if not client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment")

        return {
            'client_id': client_id,
            'client_secret': client_secret,
            'redirect_uri': os.getenv('SPOTIFY_REDIRECT_URI') or DEFAULT_REDIRECT_URI,
        }


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime tunables of the reconciliation engine and poller."""

    poll_interval_sec: int = 5
    poll_timeout_sec: int = 60
    max_workers: int = 8
    registry_path: Optional[str] = None
    checkpoint_dir: Optional[str] = None

    @classmethod
    def from_env(cls, secret_manager: Optional['SecretManager'] = None) -> 'Settings':
        """Build settings from environment variables."""
        manager = secret_manager or get_secret_manager()
        return cls(
            poll_interval_sec=_int_env('MEGALIST_POLL_INTERVAL_SEC', 5),
            poll_timeout_sec=_int_env('MEGALIST_POLL_TIMEOUT_SEC', 60),
            max_workers=_int_env('MEGALIST_MAX_WORKERS', 8),
            registry_path=os.getenv('MEGALIST_REGISTRY_PATH') or str(manager.registry_file),
            checkpoint_dir=os.getenv('MEGALIST_CHECKPOINT_DIR') or str(manager.checkpoint_dir),
        )


def load_environment(env_file: Optional[str] = None) -> bool:
    """Load a .env file into the process environment without overriding it."""
    if env_file:
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


_secret_manager: Optional[SecretManager] = None


def get_secret_manager() -> SecretManager:
    """Get global secret manager instance, creating it on first use."""
    global _secret_manager
    if _secret_manager is None:
        _secret_manager = SecretManager(os.getenv('MEGALIST_CONFIG_DIR'))
    return _secret_manager


def setup_config(config_dir: Optional[str] = None) -> SecretManager:
    """Setup configuration with custom directory."""
    global _secret_manager
    _secret_manager = SecretManager(config_dir)
    return _secret_manager

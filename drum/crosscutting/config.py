import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values

DEFAULT_CONFIG_DIR = Path.home() / '.drum'
DEFAULT_SPOTIFY_REDIRECT_URI = 'http://localhost:17998/callback'
DEFAULT_APPLEMUSIC_STOREFRONT = 'us'
DEFAULT_AUTH_TIMEOUT_SEC = 300.0
DEFAULT_LOG_LEVEL = 'INFO'


class ConfigError(Exception):
    """Configuration error."""
    pass


class SecretManager:
    """Manages drum's credentials and configuration.

    Values are looked up in the process environment first, then in the
    .env file of the config directory. Cached credentials live in
    tokens.json, one entry per service.
    """

    def __init__(self, config_dir: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        """Initialize secret manager.

        Args:
            config_dir: Config directory, defaults to $DRUM_CONFIG_DIR or ~/.drum
            environ: Environment to read from, defaults to os.environ
        """
        self.environ = os.environ if environ is None else environ
        configured_dir = config_dir or self.environ.get('DRUM_CONFIG_DIR')
        self.config_dir = Path(configured_dir).expanduser() if configured_dir else DEFAULT_CONFIG_DIR

        self.tokens_file = self.config_dir / 'tokens.json'
        self.env_file = self.config_dir / '.env'
        self._env_file_values: Optional[Dict[str, Optional[str]]] = None

    def get_spotify_scopes(self) -> list:
        """Get the Spotify scopes needed to download and upload."""
        return [
            'playlist-read-private',
            'playlist-read-collaborative',
            'playlist-modify-private',
            'user-library-read',
            'user-read-private',
        ]

    def get_spotify_scope_string(self) -> str:
        """Get Spotify scopes as space-separated string."""
        return ' '.join(self.get_spotify_scopes())

    # Environment

    def load_env_vars(self) -> Dict[str, Optional[str]]:
        """Load variables from the .env file, if there is one."""
        if self._env_file_values is None:
            if self.env_file.exists():
                try:
                    self._env_file_values = dict(dotenv_values(self.env_file))
                except (IOError, UnicodeDecodeError) as e:
                    raise ConfigError(f"Failed to load .env file {self.env_file}: {e}")
            else:
                self._env_file_values = {}
        return self._env_file_values

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.environ.get(name)
        if value:
            return value
        return self.load_env_vars().get(name) or default

    def require(self, name: str) -> str:
        value = self.get(name)
        if not value:
            raise ConfigError(f"{name} not found in environment or {self.env_file}")
        return value

    # Cached tokens

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
        """Merge tokens into tokens.json, creating the config directory if needed."""
        try:
            existing_tokens = self.load_tokens()
            existing_tokens.update(tokens)

            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.tokens_file, 'w') as f:
                json.dump(existing_tokens, f, indent=2, ensure_ascii=False)
        except (IOError, TypeError) as e:
            raise ConfigError(f"Failed to save tokens to {self.tokens_file}: {e}")

    def get_service_tokens(self, service: str) -> Optional[Dict[str, Any]]:
        return self.load_tokens().get(service)

    def save_service_tokens(self, service: str, tokens: Dict[str, Any]) -> None:
        self.save_tokens({service: tokens})

    def clear_tokens(self) -> None:
        """Clear all stored tokens."""
        if self.tokens_file.exists():
            self.tokens_file.unlink()

    # Per-service configuration

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Get Spotify client configuration."""
        return {
            'client_id': self.require('SPOTIFY_CLIENT_ID'),
            'client_secret': self.require('SPOTIFY_CLIENT_SECRET'),
            'redirect_uri': self.get('SPOTIFY_REDIRECT_URI', DEFAULT_SPOTIFY_REDIRECT_URI),
        }

    def get_applemusic_config(self) -> Dict[str, str]:
        """Get Apple Music tokens and storefront. The user token may also come from tokens.json."""
        cached = self.get_service_tokens('applemusic') or {}
        user_token = self.get('APPLEMUSIC_USER_TOKEN') or cached.get('user_token')
        if not user_token:
            raise ConfigError(f"APPLEMUSIC_USER_TOKEN not found in environment, {self.env_file} "
                              f"or {self.tokens_file}")
        return {
            'developer_token': self.require('APPLEMUSIC_DEVELOPER_TOKEN'),
            'user_token': user_token,
            'storefront': self.get('APPLEMUSIC_STOREFRONT', DEFAULT_APPLEMUSIC_STOREFRONT),
        }

    def get_auth_timeout(self) -> float:
        raw = self.get('DRUM_AUTH_TIMEOUT')
        if raw is None:
            return DEFAULT_AUTH_TIMEOUT_SEC
        try:
            timeout = float(raw)
        except ValueError:
            raise ConfigError(f"DRUM_AUTH_TIMEOUT must be a number of seconds, got '{raw}'")
        if timeout <= 0:
            raise ConfigError(f"DRUM_AUTH_TIMEOUT must be positive, got '{raw}'")
        return timeout

    def get_log_level(self) -> str:
        return self.get('DRUM_LOG_LEVEL', DEFAULT_LOG_LEVEL).upper()

    def validate_configuration(self) -> Dict[str, bool]:
        """Report which services have the configuration they need."""
        validation = {}
        for service, check in (('spotify', self.get_spotify_client_config),
                               ('applemusic', self.get_applemusic_config)):
            try:
                check()
                validation[service] = True
            except ConfigError:
                validation[service] = False
        return validation

    def get_config_summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        return {
            'config_dir': str(self.config_dir),
            'tokens_file': str(self.tokens_file),
            'env_file': str(self.env_file),
            'validation': self.validate_configuration(),
            'spotify_scopes': self.get_spotify_scopes(),
        }

import logging
import secrets
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import spotipy
from spotipy.cache_handler import CacheHandler
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError

from drum.crosscutting.config import SecretManager
from drum.domain.errors import AuthenticationFailed
from drum.interfaces.http import wait_for_callback

logger = logging.getLogger(__name__)

SPOTIFY_REQUEST_TIMEOUT_SEC = 15


@dataclass(frozen=True)
class AppleMusicTokens:
    developer_token: str
    user_token: str


class AppleMusicTokenProvider:
    """Supplies the MusicKit developer and user tokens from configuration."""

    def __init__(self, secret_manager: SecretManager):
        self.secret_manager = secret_manager

    def __call__(self) -> AppleMusicTokens:
        config = self.secret_manager.get_applemusic_config()
        return AppleMusicTokens(developer_token=config['developer_token'],
                                user_token=config['user_token'])


class TokensFileCacheHandler(CacheHandler):
    """Keeps spotipy's token info under the 'spotify' key of tokens.json."""

    def __init__(self, secret_manager: SecretManager):
        self.secret_manager = secret_manager

    def get_cached_token(self) -> Optional[Dict[str, Any]]:
        return self.secret_manager.get_service_tokens('spotify')

    def save_token_to_cache(self, token_info: Dict[str, Any]) -> None:
        self.secret_manager.save_service_tokens('spotify', token_info)
        logger.debug("Saved Spotify token info")


class SpotifyCredentialProvider:
    """Builds an authenticated spotipy client.

    Cached tokens are reused and refreshed when expired. Without a usable
    token, the user authorizes in the browser and the code arrives at the
    local callback server, which gives up after the configured timeout.
    """

    def __init__(self,
                 secret_manager: SecretManager,
                 open_browser: Callable[[str], Any] = webbrowser.open,
                 callback_waiter: Callable[[str, Optional[str], float], str] = wait_for_callback):
        self.secret_manager = secret_manager
        self.open_browser = open_browser
        self.callback_waiter = callback_waiter

    def auth_manager(self) -> SpotifyOAuth:
        config = self.secret_manager.get_spotify_client_config()
        return SpotifyOAuth(
            client_id=config['client_id'],
            client_secret=config['client_secret'],
            redirect_uri=config['redirect_uri'],
            scope=self.secret_manager.get_spotify_scope_string(),
            cache_handler=TokensFileCacheHandler(self.secret_manager),
            open_browser=False,
        )

    def authorize_in_browser(self, oauth: SpotifyOAuth) -> None:
        state = secrets.token_hex(16)
        authorize_url = oauth.get_authorize_url(state=state)
        logger.info(f"Opening the Spotify authorization page: {authorize_url}")
        self.open_browser(authorize_url)

        code = self.callback_waiter(oauth.redirect_uri, state, self.secret_manager.get_auth_timeout())
        oauth.get_access_token(code, as_dict=False, check_cache=False)
        logger.info("Successfully authorized with Spotify")

    def __call__(self) -> spotipy.Spotify:
        oauth = self.auth_manager()
        try:
            token_info = oauth.validate_token(oauth.cache_handler.get_cached_token())
            if token_info:
                logger.info("Using cached Spotify credentials")
            else:
                logger.info("Authenticating with Spotify via browser...")
                self.authorize_in_browser(oauth)
        except SpotifyOauthError as e:
            raise AuthenticationFailed(f"Spotify authentication failed: {e}") from e

        # Retries are left to drum's own rate-limit backoff.
        return spotipy.Spotify(auth_manager=oauth,
                               requests_timeout=SPOTIFY_REQUEST_TIMEOUT_SEC,
                               retries=0,
                               status_retries=0)

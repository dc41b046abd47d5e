import logging
import time
from typing import Optional
from urllib.parse import urlparse

from flask import Flask, jsonify, request
from werkzeug.serving import make_server

from drum.domain.errors import AuthenticationFailed

DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 17998
# Upper bound on a single blocking wait, so the deadline is checked regularly.
POLL_INTERVAL_SEC = 1.0


class CallbackServer:
    """One-shot local HTTP server receiving the OAuth authorization code.

    The first request to /callback ends the wait, whether it carries a code
    or an error.
    """

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 expected_state: Optional[str] = None):
        self.host = host
        self.port = port
        self.expected_state = expected_state
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)

        self.code: Optional[str] = None
        self.error: Optional[str] = None
        self.received = False

        self._setup_routes()

    def _setup_routes(self) -> None:

        @self.app.route('/health', methods=['GET'])
        def health_check():
            return jsonify({'status': 'waiting' if not self.received else 'done'}), 200

        @self.app.route('/callback', methods=['GET'])
        def oauth_callback():
            """OAuth callback endpoint for Spotify."""
            self.received = True
            error = request.args.get('error')
            code = request.args.get('code')
            state = request.args.get('state')

            if error:
                self.error = error
            elif self.expected_state is not None and state != self.expected_state:
                self.error = 'state mismatch'
            elif not code:
                self.error = 'missing authorization code'

            if self.error:
                self.logger.error(f"OAuth callback failed: {self.error}")
                return jsonify({'error': 'Could not authorize', 'details': self.error}), 400

            self.code = code
            self.logger.info("Received OAuth authorization code")
            return jsonify({
                'status': 'success',
                'message': 'Successfully got authorization code! You can close this window.',
            }), 200

    def result(self) -> str:
        """Return the received code, or raise AuthenticationFailed for anything else."""
        if not self.received:
            raise AuthenticationFailed("Did not receive an OAuth callback")
        if self.error or not self.code:
            raise AuthenticationFailed(f"Did not get an auth code: {self.error}")
        return self.code

    def wait_for_code(self, timeout: float) -> str:
        """Serve requests until /callback is hit or timeout seconds pass.

        Raises:
            AuthenticationFailed: On timeout, an OAuth error, a state mismatch or a missing code
        """
        server = make_server(self.host, self.port, self.app)
        deadline = time.monotonic() + timeout
        self.logger.info(f"Waiting up to {timeout:.0f}s for the OAuth callback "
                         f"on http://{self.host}:{self.port}/callback")
        try:
            while not self.received:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AuthenticationFailed(f"Timed out after {timeout:.0f}s waiting for the OAuth callback")
                server.timeout = min(POLL_INTERVAL_SEC, remaining)
                server.handle_request()
        finally:
            server.server_close()
        return self.result()


def wait_for_callback(redirect_uri: str, expected_state: Optional[str], timeout: float) -> str:
    """Listen on the host and port of redirect_uri and return the authorization code."""
    parsed = urlparse(redirect_uri)
    server = CallbackServer(host=parsed.hostname or DEFAULT_HOST,
                            port=parsed.port or DEFAULT_PORT,
                            expected_state=expected_state)
    return server.wait_for_code(timeout)

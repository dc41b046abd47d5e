import json
from unittest.mock import Mock, patch

import pytest

from drum.domain.errors import AuthenticationFailed
from drum.interfaces.http import CallbackServer, wait_for_callback


class TestCallbackServer:
    """Tests for the OAuth callback endpoint."""

    def setup_method(self):
        """Set up test fixtures."""
        self.server = CallbackServer(host='localhost', port=3001, expected_state='s3cr3t')
        self.client = self.server.app.test_client()

    def test_health_check(self):
        response = self.client.get('/health')

        assert response.status_code == 200
        assert json.loads(response.data) == {'status': 'waiting'}

    def test_successful_callback(self):
        response = self.client.get('/callback?code=auth-code&state=s3cr3t')

        assert response.status_code == 200
        assert json.loads(response.data)['status'] == 'success'
        assert self.server.result() == 'auth-code'
        assert json.loads(self.client.get('/health').data) == {'status': 'done'}

    def test_oauth_error(self):
        response = self.client.get('/callback?error=access_denied&state=s3cr3t')

        assert response.status_code == 400
        assert json.loads(response.data)['details'] == 'access_denied'
        with pytest.raises(AuthenticationFailed, match='access_denied'):
            self.server.result()

    def test_state_mismatch(self):
        response = self.client.get('/callback?code=auth-code&state=forged')

        assert response.status_code == 400
        with pytest.raises(AuthenticationFailed, match='state mismatch'):
            self.server.result()

    def test_missing_code(self):
        response = self.client.get('/callback?state=s3cr3t')

        assert response.status_code == 400
        with pytest.raises(AuthenticationFailed, match='missing authorization code'):
            self.server.result()

    def test_no_state_check_without_expected_state(self):
        server = CallbackServer()
        server.app.test_client().get('/callback?code=abc')
        assert server.result() == 'abc'

    def test_result_before_callback(self):
        with pytest.raises(AuthenticationFailed, match='Did not receive'):
            self.server.result()


class TestWaitForCode:
    """Tests for the timeout-bounded wait."""

    @patch('drum.interfaces.http.make_server')
    def test_times_out(self, mock_make_server):
        server = Mock()
        mock_make_server.return_value = server

        with patch('drum.interfaces.http.time.monotonic', side_effect=[0.0, 0.5, 1.0, 2.5]):
            with pytest.raises(AuthenticationFailed, match='Timed out after 2s'):
                CallbackServer().wait_for_code(timeout=2)

        assert server.handle_request.call_count == 2
        server.server_close.assert_called_once()

    @patch('drum.interfaces.http.make_server')
    def test_returns_code_once_callback_arrives(self, mock_make_server):
        callback_server = CallbackServer(expected_state='xyz')
        server = Mock()
        server.handle_request.side_effect = \
            lambda: callback_server.app.test_client().get('/callback?code=the-code&state=xyz')
        mock_make_server.return_value = server

        assert callback_server.wait_for_code(timeout=30) == 'the-code'
        mock_make_server.assert_called_once_with('localhost', 17998, callback_server.app)
        server.server_close.assert_called_once()

    @patch('drum.interfaces.http.make_server')
    def test_poll_interval_never_exceeds_remaining_time(self, mock_make_server):
        server = Mock()
        mock_make_server.return_value = server

        with patch('drum.interfaces.http.time.monotonic', side_effect=[0.0, 9.7, 10.0]):
            with pytest.raises(AuthenticationFailed):
                CallbackServer().wait_for_code(timeout=10)

        assert server.timeout == pytest.approx(0.3)

    @patch('drum.interfaces.http.CallbackServer.wait_for_code', return_value='code')
    @patch('drum.interfaces.http.CallbackServer.__init__', return_value=None)
    def test_wait_for_callback_listens_on_redirect_uri(self, mock_init, mock_wait):
        assert wait_for_callback('http://127.0.0.1:8888/callback', 'state', 60) == 'code'

        mock_init.assert_called_once_with(host='127.0.0.1', port=8888, expected_state='state')
        mock_wait.assert_called_once_with(60)

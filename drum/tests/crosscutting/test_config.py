import json
import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from drum.crosscutting.config import DEFAULT_AUTH_TIMEOUT_SEC, ConfigError, SecretManager


class TestSecretManager:
    """Tests for SecretManager class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.environ = {}
        self.manager = SecretManager(self.temp_dir, environ=self.environ)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_env_file(self, text):
        Path(self.temp_dir, '.env').write_text(text)

    def test_initialization(self):
        assert self.manager.config_dir == Path(self.temp_dir)
        assert self.manager.tokens_file == Path(self.temp_dir) / 'tokens.json'
        assert self.manager.env_file == Path(self.temp_dir) / '.env'

    def test_config_dir_from_environment(self):
        manager = SecretManager(environ={'DRUM_CONFIG_DIR': self.temp_dir})
        assert manager.config_dir == Path(self.temp_dir)

    @patch.dict(os.environ, {'DRUM_CONFIG_DIR': '/tmp/drum-from-os-environ'})
    def test_reads_process_environment_by_default(self):
        assert SecretManager().config_dir == Path('/tmp/drum-from-os-environ')

    def test_get_spotify_scope_string(self):
        scopes = self.manager.get_spotify_scopes()

        assert 'playlist-read-private' in scopes
        assert 'playlist-modify-private' in scopes
        assert 'user-library-read' in scopes
        assert self.manager.get_spotify_scope_string() == ' '.join(scopes)

    def test_get_prefers_environment_over_env_file(self):
        self.write_env_file('SPOTIFY_CLIENT_ID=from-file\nSPOTIFY_CLIENT_SECRET=file-secret\n')
        self.environ['SPOTIFY_CLIENT_ID'] = 'from-env'

        assert self.manager.get('SPOTIFY_CLIENT_ID') == 'from-env'
        assert self.manager.get('SPOTIFY_CLIENT_SECRET') == 'file-secret'
        assert self.manager.get('MISSING', 'fallback') == 'fallback'

    def test_require_missing_names_variable(self):
        with pytest.raises(ConfigError, match='SPOTIFY_CLIENT_SECRET not found'):
            self.manager.require('SPOTIFY_CLIENT_SECRET')

    def test_spotify_client_config(self):
        self.write_env_file('SPOTIFY_CLIENT_ID=id\nSPOTIFY_CLIENT_SECRET=secret\n')

        assert self.manager.get_spotify_client_config() == {
            'client_id': 'id',
            'client_secret': 'secret',
            'redirect_uri': 'http://localhost:17998/callback',
        }

    def test_applemusic_config(self):
        self.environ.update({
            'APPLEMUSIC_DEVELOPER_TOKEN': 'dev',
            'APPLEMUSIC_USER_TOKEN': 'user',
            'APPLEMUSIC_STOREFRONT': 'de',
        })

        assert self.manager.get_applemusic_config() == {
            'developer_token': 'dev', 'user_token': 'user', 'storefront': 'de'
        }

    def test_load_tokens_empty_file(self):
        assert self.manager.load_tokens() == {}

    def test_save_tokens_merges(self):
        self.manager.save_service_tokens('spotify', {'access_token': 'a'})
        self.manager.save_service_tokens('applemusic', {'user_token': 'u'})

        with open(self.manager.tokens_file) as f:
            assert json.load(f) == {'spotify': {'access_token': 'a'}, 'applemusic': {'user_token': 'u'}}
        assert self.manager.get_service_tokens('spotify') == {'access_token': 'a'}

    def test_save_tokens_creates_config_dir(self):
        manager = SecretManager(os.path.join(self.temp_dir, 'nested', 'drum'), environ={})
        manager.save_tokens({'spotify': {}})
        assert manager.tokens_file.exists()

    def test_load_tokens_invalid_json(self):
        self.manager.tokens_file.write_text('invalid json')

        with pytest.raises(ConfigError, match='Failed to load tokens'):
            self.manager.load_tokens()

    def test_clear_tokens(self):
        self.manager.save_tokens({'spotify': {'access_token': 'a'}})
        self.manager.clear_tokens()
        assert not self.manager.tokens_file.exists()

    def test_auth_timeout(self):
        assert self.manager.get_auth_timeout() == DEFAULT_AUTH_TIMEOUT_SEC

        self.environ['DRUM_AUTH_TIMEOUT'] = '30'
        assert self.manager.get_auth_timeout() == 30.0

    @pytest.mark.parametrize('value', ['soon', '0', '-5'])
    def test_invalid_auth_timeout(self, value):
        self.environ['DRUM_AUTH_TIMEOUT'] = value

        with pytest.raises(ConfigError, match='DRUM_AUTH_TIMEOUT'):
            self.manager.get_auth_timeout()

    def test_log_level(self):
        assert self.manager.get_log_level() == 'INFO'
        self.environ['DRUM_LOG_LEVEL'] = 'debug'
        assert self.manager.get_log_level() == 'DEBUG'

    def test_validate_configuration(self):
        assert self.manager.validate_configuration() == {'spotify': False, 'applemusic': False}

        self.environ.update({'SPOTIFY_CLIENT_ID': 'id', 'SPOTIFY_CLIENT_SECRET': 'secret'})
        assert self.manager.validate_configuration() == {'spotify': True, 'applemusic': False}

    def test_config_summary_has_no_secrets(self):
        self.environ.update({'SPOTIFY_CLIENT_ID': 'id', 'SPOTIFY_CLIENT_SECRET': 'super-secret'})

        summary = self.manager.get_config_summary()

        assert summary['validation']['spotify'] is True
        assert 'super-secret' not in json.dumps(summary)

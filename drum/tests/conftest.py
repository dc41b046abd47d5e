import os
import sys
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


DRUM_ENV_KEYS = [
    'DRUM_CONFIG_DIR', 'DRUM_AUTH_TIMEOUT', 'DRUM_LOG_LEVEL',
    'SPOTIFY_CLIENT_ID', 'SPOTIFY_CLIENT_SECRET', 'SPOTIFY_REDIRECT_URI',
    'APPLEMUSIC_DEVELOPER_TOKEN', 'APPLEMUSIC_USER_TOKEN', 'APPLEMUSIC_STOREFRONT',
]


@pytest.fixture(autouse=True)
def _clear_drum_env():
    """Keep a developer's drum credentials out of the tests and restore them afterwards."""
    backup = {k: os.environ.get(k) for k in DRUM_ENV_KEYS}
    for k in DRUM_ENV_KEYS:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v

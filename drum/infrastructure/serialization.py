from typing import Any, Dict, Iterable, Iterator

import yaml

from drum.domain.entities import Playlist


class InvalidDocument(ValueError):
    """A YAML document that does not describe a playlist."""


def playlist_document(playlist: Playlist, include_path: bool = True) -> Dict[str, Any]:
    document = playlist.to_json()
    if not include_path:
        document.pop('path', None)
    return document


def serialize_playlist(playlist: Playlist, include_path: bool = True) -> str:
    """Render a playlist as a YAML document, keeping field order stable."""
    return yaml.safe_dump(playlist_document(playlist, include_path),
                          sort_keys=False, allow_unicode=True)


def serialize_playlists(playlists: Iterable[Playlist]) -> Iterator[str]:
    """Render playlists as a stream of '---' separated YAML documents, one chunk per playlist."""
    for playlist in playlists:
        yield yaml.safe_dump(playlist_document(playlist), sort_keys=False,
                             allow_unicode=True, explicit_start=True)


def _from_document(document: Any, source: str) -> Playlist:
    if not isinstance(document, dict) or 'name' not in document:
        raise InvalidDocument(f"{source} does not contain a playlist")
    try:
        return Playlist.from_json(document)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidDocument(f"{source} contains an invalid playlist: {e}") from e


def deserialize_playlist(text: str, source: str = 'document') -> Playlist:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidDocument(f"{source} is not valid YAML: {e}") from e
    return _from_document(document, source)


def deserialize_playlists(text: str, source: str = 'stream') -> Iterator[Playlist]:
    """Parse every playlist document of a multi-document YAML stream."""
    try:
        for document in yaml.safe_load_all(text):
            if document is None:
                continue
            yield _from_document(document, source)
    except yaml.YAMLError as e:
        raise InvalidDocument(f"{source} is not valid YAML: {e}") from e

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional
from urllib.parse import unquote, urlparse

from drum.application.pagination import isolate_failures
from drum.application.preview import render_preview
from drum.domain.entities import Playlist
from drum.domain.errors import RemoteNotFound, Unsupported
from drum.domain.normalization import kebab_case
from drum.domain.ports import MusicService
from drum.domain.refs import RawRef, Ref, ResourceType
from drum.infrastructure.serialization import (
    InvalidDocument, deserialize_playlist, serialize_playlist,
)

logger = logging.getLogger(__name__)

PLAYLIST_SUFFIXES = ('.yaml', '.yml')
MIN_ID_PREFIX_LENGTH = 6
FILE_URI_PREFIX = 'file:'


def read_playlist(path: Path) -> Playlist:
    return deserialize_playlist(path.read_text(encoding='utf-8'), source=str(path))


class FileService(MusicService):
    """Playlists stored as YAML files on the local filesystem.

    Accepts any non-token ref as a path, so it has to be the last service
    consulted when resolving refs.
    """

    name = 'file'

    def parse_ref(self, raw_ref: RawRef) -> Optional[Ref]:
        if raw_ref.is_token:
            return None
        raw_path = raw_ref.text
        if raw_path.startswith(FILE_URI_PREFIX):
            raw_path = unquote(urlparse(raw_path).path)
        if not raw_path:
            return None
        return Ref(self.name, ResourceType.ANY, Path(raw_path))

    # Download

    def _download_directory(self, base_path: Path) -> Iterator[Playlist]:
        paths = sorted(p for p in base_path.rglob('*') if p.is_file() and p.suffix in PLAYLIST_SUFFIXES)
        logger.info(f"Found {len(paths)} playlist file(s) below {base_path}")

        def load(path: Path) -> Playlist:
            playlist = read_playlist(path)
            playlist.path = list(path.relative_to(base_path).parent.parts)
            return playlist

        yield from isolate_failures(paths, load, describe=lambda p: f"read playlist file {p}")

    def _download_file(self, path: Path) -> Iterator[Playlist]:
        yield read_playlist(path)

    def download(self, ref: Ref) -> Iterator[Playlist]:
        path: Path = ref.resource_location
        if path.is_dir():
            return self._download_directory(path)
        if not path.exists():
            raise RemoteNotFound(f"No such file or directory: {path}")
        return self._download_file(path)

    # Upload

    def _stored_id(self, path: Path) -> Optional[str]:
        try:
            return read_playlist(path).id
        except (InvalidDocument, OSError) as e:
            logger.debug(f"Treating {path} as a different playlist: {e}")
            return None

    def playlist_path(self, directory: Path, playlist: Playlist) -> Path:
        """Choose '<kebab-name>-<id prefix>.yaml' inside directory.

        The id prefix starts at 6 characters and grows while a file of that
        name holds a different playlist.
        """
        stem = kebab_case(playlist.name) or 'playlist'
        playlist_id = playlist.id or ''
        if not playlist_id:
            return directory / f"{stem}.yaml"

        length = MIN_ID_PREFIX_LENGTH
        candidate = directory / f"{stem}-{playlist_id[:length]}.yaml"
        while candidate.exists() and self._stored_id(candidate) != playlist.id:
            if length >= len(playlist_id):
                raise FileExistsError(f"{candidate} already holds a different playlist")
            length += 1
            candidate = directory / f"{stem}-{playlist_id[:length]}.yaml"
        return candidate

    def write_playlist(self, base_path: Path, playlist: Playlist) -> Path:
        path = base_path
        # A missing path without a YAML suffix is a directory to be created.
        if path.is_dir() or (not path.exists() and path.suffix not in PLAYLIST_SUFFIXES):
            directory = base_path.joinpath(*playlist.path) if playlist.path else base_path
            path = self.playlist_path(directory, playlist)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(serialize_playlist(playlist, include_path=False), encoding='utf-8')
        logger.info(f"Wrote '{playlist.name}' to {path}")
        return path

    def upload(self, ref: Ref, playlists: Iterable[Playlist]) -> Optional[List[Playlist]]:
        base_path: Path = ref.resource_location
        for _ in isolate_failures(playlists,
                                  lambda p: self.write_playlist(base_path, p),
                                  describe=lambda p: f"write playlist '{p.name}'",
                                  attempts=1):
            pass
        return None

    def remove(self, ref: Ref) -> None:
        path: Path = ref.resource_location
        if path.is_dir():
            raise Unsupported("remove", self.name, "removing directories is not supported")
        if not path.exists():
            raise RemoteNotFound(f"No such file: {path}")
        logger.info(f"Removing {path}...")
        path.unlink()

    def preview(self, ref: Ref) -> str:
        return render_preview(self.download(ref))

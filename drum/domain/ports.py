from __future__ import annotations

from typing import Iterable, Iterator, List, Optional, Protocol

from .entities import Playlist
from .errors import Unsupported
from .refs import RawRef, Ref


class MusicService(Protocol):
    """Port defining the capability contract every service backend implements.

    Implementations subclass this port and override what they support; anything
    left alone raises Unsupported naming the operation and the service.
    """

    name: str

    def parse_ref(self, raw_ref: RawRef) -> Optional[Ref]:
        """Interpret a raw ref as belonging to this service, or return None if the shape does not match."""
        return None

    def download(self, ref: Ref) -> Iterator[Playlist]:
        """Lazily materialize the playlists the ref points to."""
        raise Unsupported("download", self.name)

    def upload(self, ref: Ref, playlists: Iterable[Playlist]) -> Optional[List[Playlist]]:
        """Write playlists to the ref, optionally returning updated copies (e.g. with new external ids)."""
        raise Unsupported("upload", self.name)

    def remove(self, ref: Ref) -> None:
        """Delete the resource the ref points to."""
        raise Unsupported("remove", self.name)

    def preview(self, ref: Ref) -> str:
        """Return a short human-readable summary of the resource."""
        raise Unsupported("preview", self.name)

    def token_ref(self, location: str) -> str:
        """Reconstruct the token form '@<name>/<location>'."""
        return f"@{self.name}/{location}"

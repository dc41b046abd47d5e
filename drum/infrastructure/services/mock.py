from typing import Iterator, Optional

from drum.application.preview import render_preview
from drum.domain.entities import Artist, Playlist, Track
from drum.domain.errors import Unsupported
from drum.domain.identity import derive_id
from drum.domain.ports import MusicService
from drum.domain.refs import RawRef, Ref, ResourceType

MOCK_LOCATION = 'sample'


def sample_playlist() -> Playlist:
    """A small fixed playlist for trying out drum without any credentials."""
    playlist = Playlist(
        id=derive_id('mock:playlist:sample'),
        name='My Playlist',
        description='Lots of great songs',
    )
    queen = Artist(id=derive_id('mock:artist:queen'), name='Queen')
    beatles = Artist(id=derive_id('mock:artist:the-beatles'), name='The Beatles')
    playlist.store_artist(queen)
    playlist.store_artist(beatles)
    playlist.store_track(Track(name='Bohemian Rhapsody', artist_ids=[queen.id]))
    playlist.store_track(Track(name='Let it be', artist_ids=[beatles.id]))
    return playlist


class MockService(MusicService):
    """Serves a fixed sample playlist under '@mock'."""

    name = 'mock'

    def parse_ref(self, raw_ref: RawRef) -> Optional[Ref]:
        if raw_ref.is_token and raw_ref.text == self.name:
            return Ref(self.name, ResourceType.PLAYLIST, MOCK_LOCATION)
        return None

    def download(self, ref: Ref) -> Iterator[Playlist]:
        if ref.resource_type != ResourceType.PLAYLIST:
            raise Unsupported("download", self.name, f"cannot download {ref}")
        return iter([sample_playlist()])

    def preview(self, ref: Ref) -> str:
        return render_preview(self.download(ref))

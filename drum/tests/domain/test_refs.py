from pathlib import Path

from drum.domain.refs import RawRef, Ref, ResourceType, SpecialLocation


class TestRawRef:
    """Tests for the token/locator split."""

    def test_token(self):
        assert RawRef.parse('@spotify/playlists') == RawRef(text='spotify/playlists', is_token=True)

    def test_locator(self):
        assert RawRef.parse('playlists/road-trip.yaml') == RawRef(text='playlists/road-trip.yaml',
                                                                  is_token=False)

    def test_only_leading_sigil_counts(self):
        raw_ref = RawRef.parse('me@example')
        assert raw_ref.is_token is False
        assert raw_ref.text == 'me@example'


class TestResourceType:
    """Tests for parsing resource types out of links."""

    def test_known_types(self):
        assert ResourceType.parse('playlist') == ResourceType.PLAYLIST
        assert ResourceType.parse('album') == ResourceType.ALBUM

    def test_internal_types_are_not_parsed(self):
        assert ResourceType.parse('special') is None
        assert ResourceType.parse('any') is None
        assert ResourceType.parse('episode') is None


class TestRef:
    """Tests for the display form of refs."""

    def test_special_location_renders_as_token(self):
        ref = Ref('spotify', ResourceType.SPECIAL, SpecialLocation.PLAYLISTS)
        assert str(ref) == '@spotify/playlists'

    def test_pair_location(self):
        ref = Ref('applemusic', ResourceType.PLAYLIST, ('us', 'pl.123'))
        assert str(ref) == 'applemusic:playlist:us/pl.123'

    def test_stream_set_location(self):
        ref = Ref('stdio', ResourceType.ANY, frozenset([SpecialLocation.STDOUT, SpecialLocation.STDIN]))
        assert str(ref) == 'stdio:any:stdin+stdout'

    def test_path_location(self):
        ref = Ref('file', ResourceType.ANY, Path('music/mix.yaml'))
        assert str(ref) == f"file:any:{Path('music/mix.yaml')}"

    def test_refs_are_hashable_values(self):
        a = Ref('spotify', ResourceType.PLAYLIST, 'abc')
        b = Ref('spotify', ResourceType.PLAYLIST, 'abc')
        assert a == b
        assert len({a, b}) == 1

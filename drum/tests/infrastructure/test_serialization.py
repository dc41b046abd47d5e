import pytest

from drum.domain.entities import Album, Artist, Playlist, Track
from drum.infrastructure.serialization import (
    InvalidDocument, deserialize_playlist, deserialize_playlists, serialize_playlist, serialize_playlists,
)


def _playlist():
    playlist = Playlist(id='p1', name='Für Elise & Co', description='Klassik', path=['Ludwig'])
    playlist.store_artist(Artist(id='a1', name='Beethoven'))
    playlist.store_album(Album(id='al1', name='Piano Works', artist_ids=['a1']))
    playlist.store_track(Track(name='Für Elise', artist_ids=['a1'], album_id='al1'))
    return playlist


class TestSerialization:
    """Tests for the YAML document format."""

    def test_keeps_field_order_and_unicode(self):
        text = serialize_playlist(_playlist())

        assert text.startswith("id: p1\nname: Für Elise & Co\ndescription: Klassik\npath:\n- Ludwig\n")

    def test_can_drop_path(self):
        assert 'path' not in serialize_playlist(_playlist(), include_path=False)

    def test_round_trip(self):
        assert deserialize_playlist(serialize_playlist(_playlist())) == _playlist()

    def test_stream_is_one_chunk_per_playlist(self):
        chunks = list(serialize_playlists([_playlist(), Playlist(id='p2', name='Two')]))

        assert len(chunks) == 2
        assert all(chunk.startswith('---\n') for chunk in chunks)
        assert [p.name for p in deserialize_playlists(''.join(chunks))] == ['Für Elise & Co', 'Two']

    def test_invalid_yaml(self):
        with pytest.raises(InvalidDocument, match='mix.yaml is not valid YAML'):
            deserialize_playlist('name: [unclosed', source='mix.yaml')

    def test_document_without_name(self):
        with pytest.raises(InvalidDocument, match='does not contain a playlist'):
            deserialize_playlist('- just\n- a list\n')

    def test_invalid_track(self):
        with pytest.raises(InvalidDocument, match='invalid playlist'):
            deserialize_playlist('name: Mix\ntracks:\n- artist_ids: []\n')

    def test_empty_documents_are_skipped(self):
        assert [p.name for p in deserialize_playlists('---\n---\nname: Only\n')] == ['Only']

import shutil
import tempfile
from pathlib import Path

import pytest
import yaml

from drum.application.pagination import collecting_failures
from drum.domain.entities import Artist, Playlist, Track
from drum.domain.errors import RemoteNotFound, Unsupported
from drum.domain.refs import RawRef, Ref, ResourceType
from drum.infrastructure.serialization import serialize_playlist
from drum.infrastructure.services.file import FileService


def make_playlist(name='Road Trip', playlist_id='abcdef123456', path=None):
    playlist = Playlist(id=playlist_id, name=name, path=list(path or []))
    playlist.store_artist(Artist(id='a1', name='Queen'))
    playlist.store_track(Track(name='Bohemian Rhapsody', artist_ids=['a1']))
    return playlist


class TestFileParseRef:
    """Tests for the file ref grammar."""

    def setup_method(self):
        self.service = FileService()

    def test_any_locator_is_a_path(self):
        ref = self.service.parse_ref(RawRef.parse('music/mix.yaml'))
        assert ref == Ref('file', ResourceType.ANY, Path('music/mix.yaml'))

    def test_file_uri(self):
        ref = self.service.parse_ref(RawRef.parse('file:///tmp/My%20Mix.yaml'))
        assert ref.resource_location == Path('/tmp/My Mix.yaml')

    def test_tokens_are_not_paths(self):
        assert self.service.parse_ref(RawRef.parse('@spotify/playlists')) is None


class TestFileService:
    """Tests for reading and writing playlist files."""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.service = FileService()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def ref(self, path):
        return Ref('file', ResourceType.ANY, path)

    def test_upload_to_directory_names_file_after_playlist(self):
        self.service.upload(self.ref(self.temp_dir), [make_playlist()])

        written = self.temp_dir / 'road-trip-abcdef.yaml'
        assert written.exists()
        document = yaml.safe_load(written.read_text(encoding='utf-8'))
        assert document['name'] == 'Road Trip'
        assert document['tracks'] == [{'name': 'Bohemian Rhapsody', 'artist_ids': ['a1']}]

    def test_upload_uses_playlist_path_as_folders(self):
        self.service.upload(self.ref(self.temp_dir), [make_playlist(path=['Alice', 'trips'])])

        written = self.temp_dir / 'Alice' / 'trips' / 'road-trip-abcdef.yaml'
        assert written.exists()
        assert 'path' not in yaml.safe_load(written.read_text(encoding='utf-8'))

    def test_upload_overwrites_same_playlist(self):
        self.service.upload(self.ref(self.temp_dir), [make_playlist()])
        self.service.upload(self.ref(self.temp_dir), [make_playlist()])

        assert [p.name for p in self.temp_dir.iterdir()] == ['road-trip-abcdef.yaml']

    def test_id_prefix_grows_on_collision(self):
        self.service.upload(self.ref(self.temp_dir), [make_playlist(playlist_id='abcdef111')])
        self.service.upload(self.ref(self.temp_dir), [make_playlist(playlist_id='abcdef222')])

        names = sorted(p.name for p in self.temp_dir.iterdir())
        assert names == ['road-trip-abcdef.yaml', 'road-trip-abcdef2.yaml']

    def test_playlist_without_id(self):
        path = self.service.playlist_path(self.temp_dir, make_playlist(playlist_id=None))
        assert path == self.temp_dir / 'road-trip.yaml'

    def test_exhausted_prefix_raises(self):
        (self.temp_dir / 'road-trip-abc.yaml').write_text(serialize_playlist(make_playlist(playlist_id='xyz')))

        with pytest.raises(FileExistsError):
            # An id of length 3 can never grow beyond the clashing file name.
            self.service.playlist_path(self.temp_dir, make_playlist(playlist_id='abc'))

    def test_upload_to_new_yaml_file(self):
        target = self.temp_dir / 'out' / 'mix.yaml'

        self.service.upload(self.ref(target), [make_playlist()])

        assert target.is_file()

    def test_upload_to_missing_directory(self):
        target = self.temp_dir / 'library'

        self.service.upload(self.ref(target), [make_playlist()])

        assert (target / 'road-trip-abcdef.yaml').is_file()

    def test_upload_returns_nothing(self):
        assert self.service.upload(self.ref(self.temp_dir), [make_playlist()]) is None

    def test_download_single_file(self):
        path = self.temp_dir / 'mix.yaml'
        path.write_text(serialize_playlist(make_playlist()), encoding='utf-8')

        [playlist] = list(self.service.download(self.ref(path)))

        assert playlist == make_playlist()

    def test_download_directory_sets_relative_paths(self):
        self.service.upload(self.ref(self.temp_dir), [
            make_playlist(name='B', playlist_id='bbbbbbbb', path=['Alice']),
            make_playlist(name='A', playlist_id='aaaaaaaa'),
        ])
        (self.temp_dir / 'notes.txt').write_text('not a playlist')

        playlists = list(self.service.download(self.ref(self.temp_dir)))

        assert [(p.name, p.path) for p in playlists] == [('B', ['Alice']), ('A', [])]

    def test_download_round_trip_through_directory(self):
        original = make_playlist(path=['Alice'])
        self.service.upload(self.ref(self.temp_dir), [original])

        [restored] = list(self.service.download(self.ref(self.temp_dir)))

        assert restored == original

    def test_broken_file_is_skipped(self):
        (self.temp_dir / 'a.yaml').write_text('{ not yaml')
        (self.temp_dir / 'b.yaml').write_text(serialize_playlist(make_playlist()))
        failures = []

        with collecting_failures(lambda description, item, error: failures.append(description)):
            playlists = list(self.service.download(self.ref(self.temp_dir)))

        assert [p.name for p in playlists] == ['Road Trip']
        assert failures == [f"read playlist file {self.temp_dir / 'a.yaml'}"]

    def test_download_missing_path(self):
        with pytest.raises(RemoteNotFound):
            self.service.download(self.ref(self.temp_dir / 'missing.yaml'))

    def test_remove_file(self):
        path = self.temp_dir / 'mix.yaml'
        path.write_text(serialize_playlist(make_playlist()))

        self.service.remove(self.ref(path))

        assert not path.exists()

    def test_remove_directory_is_unsupported(self):
        with pytest.raises(Unsupported) as exc_info:
            self.service.remove(self.ref(self.temp_dir))

        assert exc_info.value.operation == 'remove'
        assert self.temp_dir.exists()

    def test_remove_missing_file(self):
        with pytest.raises(RemoteNotFound):
            self.service.remove(self.ref(self.temp_dir / 'missing.yaml'))

    def test_preview(self):
        path = self.temp_dir / 'mix.yaml'
        path.write_text(serialize_playlist(make_playlist()))

        assert self.service.preview(self.ref(path)) == 'Road Trip (1 tracks)\n  - Bohemian Rhapsody by Queen'

from drum.application.preview import render_playlist, render_preview
from drum.domain.entities import Artist, Playlist, Track, User


def _playlist(name='Mix', tracks=3):
    playlist = Playlist(id=name, name=name, path=['friends'], author_id='u1')
    playlist.store_user(User(id='u1', display_name='Alice'))
    playlist.store_artist(Artist(id='a1', name='Queen'))
    for i in range(tracks):
        playlist.store_track(Track(name=f"Song {i}", artist_ids=['a1']))
    return playlist


def test_render_playlist_header_and_tracks():
    lines = render_playlist(_playlist(tracks=2))

    assert lines == [
        'friends/Mix (2 tracks, by Alice)',
        '  - Song 0 by Queen',
        '  - Song 1 by Queen',
    ]


def test_render_playlist_truncates_tracks():
    lines = render_playlist(_playlist(tracks=8), max_tracks=5)

    assert len(lines) == 7
    assert lines[-1] == '  ... and 3 more'


def test_render_playlist_without_author_or_artists():
    playlist = Playlist(id='p', name='Bare')
    playlist.store_track(Track(name='Untitled'))

    assert render_playlist(playlist) == ['Bare (1 tracks)', '  - Untitled']


def test_render_preview_consumes_only_what_it_shows():
    pulled = []

    def playlists():
        for i in range(100):
            pulled.append(i)
            yield _playlist(name=f"P{i}", tracks=0)

    text = render_preview(playlists(), max_playlists=2)

    assert text == 'friends/P0 (0 tracks, by Alice)\nfriends/P1 (0 tracks, by Alice)'
    assert pulled == [0, 1]


def test_render_preview_empty():
    assert render_preview(iter([])) == 'No playlists'

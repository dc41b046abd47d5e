import logging
from dataclasses import replace
from datetime import datetime
from itertools import islice
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

import requests
import spotipy
from spotipy.exceptions import SpotifyException

from drum.application.pagination import (
    RateLimiter, chunked, isolate_failures, paginate, with_rate_limit_retry,
)
from drum.application.preview import render_preview
from drum.domain.entities import (
    Album, AlbumSpotify, Artist, ArtistSpotify, Playlist, PlaylistSpotify,
    Track, TrackSpotify, User, UserSpotify,
)
from drum.domain.errors import (
    AuthenticationFailed, DrumError, RateLimited, RemoteNotFound, RemoteTransient, Unsupported,
)
from drum.domain.identity import derive_id
from drum.domain.normalization import parse_release_date
from drum.domain.ports import MusicService
from drum.domain.refs import RawRef, Ref, ResourceType, SpecialLocation

logger = logging.getLogger(__name__)

PLAYLISTS_CHUNK_SIZE = 50
TRACKS_CHUNK_SIZE = 100
SAVED_TRACKS_CHUNK_SIZE = 50
UPLOAD_PLAYLIST_TRACKS_CHUNK_SIZE = 100
MAX_PLAYLIST_TRACKS = 10_000

DEFAULT_RETRY_AFTER_SEC = 0.5
SAVED_TRACKS_NAME = 'Saved Tracks'
# Spotify-generated playlists that either 404 or page forever.
SKIPPED_PLAYLIST_PREFIX = 'Your Top Songs'

LINK_HOST = 'open.spotify.com'
URI_SCHEME = 'spotify'
RESOURCE_TYPES = (ResourceType.PLAYLIST, ResourceType.ALBUM, ResourceType.TRACK,
                  ResourceType.USER, ResourceType.ARTIST)


def translate_spotify_error(error: Exception) -> Exception:
    """Map a spotipy/requests exception onto the drum error taxonomy."""
    if isinstance(error, SpotifyException):
        status = error.http_status
        if status == 429:
            headers = getattr(error, 'headers', None) or {}
            retry_after = headers.get('Retry-After') or headers.get('retry-after')
            try:
                seconds = float(retry_after) if retry_after is not None else DEFAULT_RETRY_AFTER_SEC
            except ValueError:
                seconds = DEFAULT_RETRY_AFTER_SEC
            return RateLimited(retry_after_ms=int(seconds * 1000), message=f"Spotify rate limit: {error.msg}")
        if status == 404:
            return RemoteNotFound(f"Spotify resource not found: {error.msg}")
        if status in (401, 403):
            return AuthenticationFailed(f"Spotify rejected the credentials: {error.msg}")
        return RemoteTransient(f"Spotify request failed ({status}): {error.msg}")
    if isinstance(error, requests.exceptions.RequestException):
        return RemoteTransient(f"Could not reach Spotify: {error}")
    return error


def _image_url(obj: Optional[Dict[str, Any]]) -> Optional[str]:
    images = (obj or {}).get('images') or []
    return images[0].get('url') if images else None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class SpotifyService(MusicService):
    """Spotify Web API backend built on spotipy.

    The client is obtained from client_provider on first use, so constructing
    the service never triggers authentication.
    """

    name = 'spotify'

    def __init__(self,
                 client_provider: Callable[[], spotipy.Spotify],
                 rate_limiter: Optional[RateLimiter] = None):
        """Initialize Spotify service.

        Args:
            client_provider: Returns an authenticated spotipy client
            rate_limiter: Limits API calls (default 15 calls per 5 seconds)
        """
        self._client_provider = client_provider
        self._client: Optional[spotipy.Spotify] = None
        self._me: Optional[Dict[str, Any]] = None
        self._limiter = rate_limiter or RateLimiter(15, 5)

    # Client access

    @property
    def client(self) -> spotipy.Spotify:
        if self._client is None:
            self._client = self._client_provider()
        return self._client

    def _call(self, method: str, *args, **kwargs) -> Any:
        """Invoke a spotipy client method through the rate limiter, translating its errors."""
        self._limiter.acquire()
        try:
            return getattr(self.client, method)(*args, **kwargs)
        except (SpotifyException, requests.exceptions.RequestException) as e:
            raise translate_spotify_error(e) from e

    def _page(self, method: str, *args, offset: int, limit: int, **kwargs) -> Tuple[List[Any], Optional[int]]:
        page = self._call(method, *args, limit=limit, offset=offset, **kwargs) or {}
        # Keep null entries so paginate sees the page size the server returned.
        return list(page.get('items') or []), page.get('total')

    def me(self) -> Dict[str, Any]:
        if self._me is None:
            self._me = with_rate_limit_retry(lambda: self._call('me'), "fetch the current user")
            logger.info(f"Logged in to Spotify as {self._me.get('id')}")
        return self._me

    # Ref parsing

    def _parse_link(self, raw: str) -> Optional[Ref]:
        parsed = urlparse(raw)
        if parsed.scheme not in ('http', 'https') or parsed.netloc != LINK_HOST:
            return None
        segments = parsed.path.split('/')
        if len(segments) != 3 or not segments[2]:
            return None
        resource_type = ResourceType.parse(segments[1])
        if resource_type not in RESOURCE_TYPES:
            return None
        return Ref(self.name, resource_type, segments[2])

    def _parse_uri(self, raw: str) -> Optional[Ref]:
        scheme, _, opaque = raw.partition(':')
        if scheme != URI_SCHEME:
            return None
        segments = opaque.split(':')
        if len(segments) != 2 or not segments[1]:
            return None
        resource_type = ResourceType.parse(segments[0])
        if resource_type not in RESOURCE_TYPES:
            return None
        return Ref(self.name, resource_type, segments[1])

    def parse_ref(self, raw_ref: RawRef) -> Optional[Ref]:
        if raw_ref.is_token:
            locations = {
                f"{self.name}/playlists": SpecialLocation.PLAYLISTS,
                f"{self.name}/tracks": SpecialLocation.TRACKS,
            }
            location = locations.get(raw_ref.text)
            return Ref(self.name, ResourceType.SPECIAL, location) if location else None
        return self._parse_link(raw_ref.text) or self._parse_uri(raw_ref.text)

    # Conversion from Spotify objects. These build entities but only the
    # from_sp_playlist/_saved_tracks_playlist callers store them.

    def from_sp_user(self, sp_user: Dict[str, Any]) -> User:
        sp_id = sp_user.get('id')
        return User(
            id=derive_id(sp_id),
            display_name=sp_user.get('display_name') or None,
            spotify=UserSpotify(id=sp_id, image_url=_image_url(sp_user)),
        )

    def from_sp_artist(self, sp_artist: Dict[str, Any]) -> Artist:
        sp_id = sp_artist.get('id')
        return Artist(
            id=derive_id(sp_id),
            name=sp_artist.get('name'),
            spotify=ArtistSpotify(id=sp_id, image_url=_image_url(sp_artist)),
        )

    def from_sp_album(self, sp_album: Dict[str, Any]) -> Tuple[Album, List[Artist]]:
        artists = [self.from_sp_artist(a) for a in sp_album.get('artists') or [] if a.get('id')]
        sp_id = sp_album.get('id')
        album = Album(
            id=derive_id(sp_id),
            name=sp_album.get('name'),
            artist_ids=[a.id for a in artists],
            spotify=AlbumSpotify(id=sp_id, image_url=_image_url(sp_album)),
        )
        return album, artists

    def from_sp_track(self, sp_track: Dict[str, Any]) -> Tuple[Track, List[Artist], Optional[Album]]:
        track_artists = [self.from_sp_artist(a) for a in sp_track.get('artists') or [] if a.get('id')]
        artists = list(track_artists)
        album = None
        sp_album = sp_track.get('album')
        if sp_album and sp_album.get('id'):
            album, album_artists = self.from_sp_album(sp_album)
            artists += album_artists

        track = Track(
            name=sp_track.get('name') or '',
            artist_ids=[a.id for a in track_artists],
            album_id=album.id if album else None,
            duration_ms=sp_track.get('duration_ms'),
            explicit=sp_track.get('explicit'),
            isrc=(sp_track.get('external_ids') or {}).get('isrc'),
            released_at=parse_release_date((sp_album or {}).get('release_date')),
            spotify=TrackSpotify(id=sp_track.get('id')),
        )
        return track, artists, album

    def _store_track(self, playlist: Playlist, sp_track: Dict[str, Any],
                     added_at: Optional[str] = None,
                     added_by: Optional[Dict[str, Any]] = None) -> None:
        track, artists, album = self.from_sp_track(sp_track)
        for artist in artists:
            playlist.store_artist(artist)
        if album is not None:
            playlist.store_album(album)

        added_by_id = None
        if added_by and added_by.get('id'):
            user = self.from_sp_user(added_by)
            playlist.store_user(user)
            added_by_id = user.id

        playlist.store_track(replace(track, added_at=_parse_timestamp(added_at), added_by=added_by_id))

    def from_sp_playlist(self, sp_playlist: Dict[str, Any]) -> Playlist:
        """Materialize a playlist summary and all of its tracks."""
        sp_id = sp_playlist['id']
        playlist = Playlist(
            id=derive_id(sp_id),
            name=sp_playlist.get('name') or '',
            description=sp_playlist.get('description') or None,
            spotify=PlaylistSpotify(
                id=sp_id,
                public=sp_playlist.get('public'),
                collaborative=sp_playlist.get('collaborative'),
                image_url=_image_url(sp_playlist),
            ),
        )

        owner = sp_playlist.get('owner')
        if owner and owner.get('id'):
            author = self.from_sp_user(owner)
            playlist.author_id = author.id
            playlist.store_user(author)

        items = paginate(
            lambda offset, limit: self._page('playlist_items', sp_id, offset=offset, limit=limit,
                                             additional_types=('track',)),
            TRACKS_CHUNK_SIZE,
            label=f"playlist '{playlist.name}'",
            max_items=MAX_PLAYLIST_TRACKS,
        )
        for item in items:
            sp_track = (item or {}).get('track')
            if not sp_track or not sp_track.get('id'):
                logger.debug(f"Skipping local or unavailable track in '{playlist.name}'")
                continue
            self._store_track(playlist, sp_track, item.get('added_at'), item.get('added_by'))

        logger.info(f"Got {len(playlist.tracks)} playlist track(s) for '{playlist.name}'")
        return playlist

    # Download

    def _library_playlist_summaries(self) -> Iterator[Dict[str, Any]]:
        summaries = paginate(
            lambda offset, limit: with_rate_limit_retry(
                lambda: self._page('current_user_playlists', offset=offset, limit=limit),
                "query library playlists"),
            PLAYLISTS_CHUNK_SIZE,
            label='library playlists',
        )
        for summary in summaries:
            if not summary:
                continue
            if (summary.get('name') or '').startswith(SKIPPED_PLAYLIST_PREFIX):
                logger.info(f"Skipping '{summary.get('name')}'")
                continue
            yield summary

    def _saved_tracks_playlist(self) -> Playlist:
        me = self.from_sp_user(self.me())
        playlist = Playlist(id=derive_id(me.id), name=SAVED_TRACKS_NAME, author_id=me.id)
        playlist.store_user(me)

        items = paginate(
            lambda offset, limit: with_rate_limit_retry(
                lambda: self._page('current_user_saved_tracks', offset=offset, limit=limit),
                "query saved tracks"),
            SAVED_TRACKS_CHUNK_SIZE,
            label='saved tracks',
            max_items=MAX_PLAYLIST_TRACKS,
        )
        for item in items:
            sp_track = (item or {}).get('track')
            if sp_track and sp_track.get('id'):
                self._store_track(playlist, sp_track, item.get('added_at'))

        logger.info(f"Got {len(playlist.tracks)} saved track(s)")
        return playlist

    def _download_library_playlists(self) -> Iterator[Playlist]:
        logger.info("Fetching library playlists...")
        yield from isolate_failures(
            self._library_playlist_summaries(),
            self.from_sp_playlist,
            describe=lambda s: f"download playlist '{s.get('name')}'",
        )

    def _download_saved_tracks(self) -> Iterator[Playlist]:
        logger.info("Fetching saved tracks...")
        yield self._saved_tracks_playlist()

    def _download_playlist(self, sp_id: str) -> Iterator[Playlist]:
        yield with_rate_limit_retry(
            lambda: self.from_sp_playlist(self._call('playlist', sp_id)),
            f"download playlist {sp_id}",
        )

    def download(self, ref: Ref) -> Iterator[Playlist]:
        if ref.resource_type == ResourceType.SPECIAL:
            if ref.resource_location == SpecialLocation.PLAYLISTS:
                return self._download_library_playlists()
            if ref.resource_location == SpecialLocation.TRACKS:
                return self._download_saved_tracks()
        elif ref.resource_type == ResourceType.PLAYLIST:
            return self._download_playlist(ref.resource_location)
        raise Unsupported("download", self.name, f"cannot download {ref}")

    # Upload

    def to_sp_track_id(self, track: Track, playlist: Playlist) -> Optional[str]:
        """Find the Spotify id for a track, using the stored id or a search by name and artists."""
        if track.spotify and track.spotify.id:
            return track.spotify.id

        phrase = playlist.track_search_phrase(track)
        results = self._call('search', q=phrase, type='track', limit=1) or {}
        items = (results.get('tracks') or {}).get('items') or []
        if not items:
            logger.warning(f"No match on Spotify for '{phrase}'")
            return None

        sp_track = items[0]
        artists = ', '.join(a.get('name', '') for a in sp_track.get('artists') or [])
        logger.info(f"Matched '{track.name}' with '{sp_track.get('name')}' by '{artists}' from Spotify")
        return sp_track.get('id')

    def _match_track(self, track: Track, playlist: Playlist) -> Optional[str]:
        try:
            return with_rate_limit_retry(lambda: self.to_sp_track_id(track, playlist),
                                         f"look up '{track.name}'")
        except (RateLimited, AuthenticationFailed):
            raise
        except DrumError as e:
            logger.warning(f"Leaving '{track.name}' unmatched, the lookup failed: {e}")
            return None

    def upload_playlist(self, playlist: Playlist) -> Playlist:
        """Create a new private playlist and fill it. Returns the playlist with Spotify ids backfilled."""
        logger.info(f"Externalizing {len(playlist.tracks)} playlist track(s)...")
        tracks: List[Track] = []
        sp_ids: List[str] = []
        for track in playlist.tracks:
            sp_id = self._match_track(track, playlist)
            if sp_id is None:
                tracks.append(track)
                continue
            tracks.append(track if track.spotify and track.spotify.id == sp_id else track.with_spotify_id(sp_id))
            sp_ids.append(sp_id)

        sp_playlist = with_rate_limit_retry(
            lambda: self._call('user_playlist_create', self.me()['id'], playlist.name,
                               public=False, collaborative=False,
                               description=playlist.description or ''),
            f"create playlist '{playlist.name}'",
        )

        logger.info(f"Uploading {len(sp_ids)} playlist track(s)...")
        for chunk in chunked(sp_ids, UPLOAD_PLAYLIST_TRACKS_CHUNK_SIZE):
            with_rate_limit_retry(lambda: self._call('playlist_add_items', sp_playlist['id'], chunk),
                                  f"add tracks to '{playlist.name}'")

        return replace(
            playlist,
            tracks=tracks,
            spotify=PlaylistSpotify(
                id=sp_playlist['id'],
                public=False,
                collaborative=False,
                image_url=_image_url(sp_playlist),
            ),
        )

    def upload(self, ref: Ref, playlists: Iterable[Playlist]) -> Optional[List[Playlist]]:
        # Pushes always create new playlists.
        if ref.resource_type != ResourceType.SPECIAL or ref.resource_location != SpecialLocation.PLAYLISTS:
            raise Unsupported("upload", self.name, "can only upload to @spotify/playlists")
        return list(isolate_failures(
            playlists,
            self.upload_playlist,
            describe=lambda p: f"upload playlist '{p.name}'",
            attempts=1,
        ))

    def preview(self, ref: Ref) -> str:
        if ref.resource_type == ResourceType.SPECIAL and ref.resource_location == SpecialLocation.PLAYLISTS:
            lines = []
            for summary in islice(self._library_playlist_summaries(), 20):
                total = (summary.get('tracks') or {}).get('total')
                lines.append(f"{summary.get('name')} ({total} tracks)")
            return '\n'.join(lines) or "No playlists"
        return render_preview(self.download(ref))

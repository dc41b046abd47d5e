import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from drum.application.pagination import (
    RateLimiter, isolate_failures, paginate, with_rate_limit_retry,
)
from drum.application.preview import render_preview
from drum.domain.entities import (
    Album, AlbumAppleMusic, Artist, Playlist, PlaylistAppleMusic, Track,
    TrackAppleMusic, User,
)
from drum.domain.errors import (
    AuthenticationFailed, DrumError, RateLimited, RemoteNotFound, RemoteTransient, Unsupported,
)
from drum.domain.identity import derive_id
from drum.domain.normalization import parse_release_date, split_artist_names
from drum.domain.ports import MusicService
from drum.domain.refs import RawRef, Ref, ResourceType, SpecialLocation
from drum.infrastructure.auth import AppleMusicTokens

logger = logging.getLogger(__name__)

BASE_URL = 'https://api.music.apple.com/v1'
PLAYLISTS_CHUNK_SIZE = 50
MAX_ALBUM_ARTWORK_WIDTH = 512
MAX_ALBUM_ARTWORK_HEIGHT = 512
MAX_PLAYLIST_TRACKS = 10_000
DEFAULT_RETRY_AFTER_SEC = 0.5
REQUEST_TIMEOUT_SEC = 15

LINK_HOST = 'music.apple.com'
RESOURCE_TYPES = (ResourceType.PLAYLIST, ResourceType.ALBUM, ResourceType.ARTIST)


def translate_http_error(error: Exception) -> Exception:
    """Map a requests exception onto the drum error taxonomy."""
    if isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        response = error.response
        status = response.status_code
        if status == 429:
            retry_after = response.headers.get('Retry-After')
            try:
                seconds = float(retry_after) if retry_after is not None else DEFAULT_RETRY_AFTER_SEC
            except ValueError:
                seconds = DEFAULT_RETRY_AFTER_SEC
            return RateLimited(retry_after_ms=int(seconds * 1000), message="Apple Music rate limit")
        if status == 404:
            return RemoteNotFound(f"Apple Music resource not found: {response.url}")
        if status in (401, 403):
            return AuthenticationFailed(f"Apple Music rejected the credentials ({status})")
        return RemoteTransient(f"Apple Music request failed ({status}): {response.url}")
    if isinstance(error, requests.exceptions.RequestException):
        return RemoteTransient(f"Could not reach Apple Music: {error}")
    return error


def artwork_url(am_artwork: Optional[Dict[str, Any]]) -> Optional[str]:
    """Fill in the {w}x{h} template of an artwork URL, capped at 512 pixels per side."""
    am_artwork = am_artwork or {}
    url = am_artwork.get('url')
    if url is None:
        return None
    width = min(w for w in (am_artwork.get('width'), MAX_ALBUM_ARTWORK_WIDTH) if w is not None)
    height = min(h for h in (am_artwork.get('height'), MAX_ALBUM_ARTWORK_HEIGHT) if h is not None)
    return url.replace('{w}', str(width)).replace('{h}', str(height))


class AppleMusicService(MusicService):
    """Apple Music API backend, talking JSON over requests.

    Authentication uses a MusicKit developer token plus a user token, both
    obtained from token_provider when the first request is made.
    """

    name = 'applemusic'

    def __init__(self,
                 token_provider: Callable[[], AppleMusicTokens],
                 storefront: str = 'us',
                 session: Optional[requests.Session] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        self._token_provider = token_provider
        self._tokens: Optional[AppleMusicTokens] = None
        self.storefront = storefront
        self._session = session or requests.Session()
        self._limiter = rate_limiter or RateLimiter(60, 60)

    # HTTP

    def _headers(self) -> Dict[str, str]:
        if self._tokens is None:
            self._tokens = self._token_provider()
        return {
            'Authorization': f"Bearer {self._tokens.developer_token}",
            'Music-User-Token': self._tokens.user_token,
        }

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        self._limiter.acquire()
        logger.debug(f"-> {method} {endpoint}")
        try:
            response = self._session.request(method, f"{BASE_URL}{endpoint}",
                                             headers=self._headers(),
                                             timeout=REQUEST_TIMEOUT_SEC,
                                             **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise translate_http_error(e) from e
        if not response.content:
            return {}
        return response.json()

    def get_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request('GET', endpoint, params=params)

    def post_json(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request('POST', endpoint, json=body)

    def _page(self, endpoint: str, offset: int, limit: int) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        response = with_rate_limit_retry(
            lambda: self.get_json(endpoint, params={'limit': limit, 'offset': offset}),
            f"query {endpoint}",
        )
        return response.get('data') or [], (response.get('meta') or {}).get('total')

    # Ref parsing

    def _parse_link(self, raw: str) -> Optional[Ref]:
        parsed = urlparse(raw)
        if parsed.scheme not in ('http', 'https') or parsed.netloc != LINK_HOST:
            return None
        # /<storefront>/<type>/<slug>/<id>
        segments = parsed.path.split('/')
        if len(segments) != 5 or not segments[4]:
            return None
        resource_type = ResourceType.parse(segments[2])
        if resource_type not in RESOURCE_TYPES:
            return None
        return Ref(self.name, resource_type, (segments[1], segments[4]))

    def parse_ref(self, raw_ref: RawRef) -> Optional[Ref]:
        if raw_ref.is_token:
            locations = {
                f"{self.name}/playlists": SpecialLocation.PLAYLISTS,
                f"{self.name}/tracks": SpecialLocation.TRACKS,
            }
            location = locations.get(raw_ref.text)
            return Ref(self.name, ResourceType.SPECIAL, location) if location else None
        return self._parse_link(raw_ref.text)

    # Conversion from Apple Music resources

    @staticmethod
    def from_am_artist_names(combined: str) -> List[Artist]:
        return [Artist(id=derive_id(name), name=name) for name in split_artist_names(combined)]

    def from_am_track(self, am_track: Dict[str, Any]) -> Tuple[Track, List[Artist], Optional[Album]]:
        attributes = am_track.get('attributes') or {}

        album = None
        album_name = attributes.get('albumName')
        if album_name is not None:
            album = Album(
                id=derive_id(album_name),
                name=album_name,
                applemusic=AlbumAppleMusic(image_url=artwork_url(attributes.get('artwork'))),
            )

        artists: List[Artist] = []
        artist_ids: List[str] = []
        if attributes.get('artistName') is not None:
            artists = self.from_am_artist_names(attributes['artistName'])
            artist_ids = [a.id for a in artists]

        composer_ids: List[str] = []
        if attributes.get('composerName') is not None:
            composers = self.from_am_artist_names(attributes['composerName'])
            composer_ids = [c.id for c in composers]
            artists += composers

        track = Track(
            name=attributes.get('name') or '',
            artist_ids=artist_ids,
            composer_ids=composer_ids,
            album_id=album.id if album else None,
            genres=list(attributes.get('genreNames') or []),
            duration_ms=attributes.get('durationInMillis'),
            isrc=attributes.get('isrc'),
            released_at=parse_release_date(attributes.get('releaseDate')),
        )
        return track, artists, album

    def from_am_library_track(self, am_track: Dict[str, Any]) -> Tuple[Track, List[Artist], Optional[Album]]:
        track, artists, album = self.from_am_track(am_track)
        play_params = (am_track.get('attributes') or {}).get('playParams') or {}
        track = replace(track, applemusic=TrackAppleMusic(
            library_id=play_params.get('id'),
            catalog_id=play_params.get('catalogId'),
        ))
        return track, artists, album

    def from_am_catalog_track(self, am_track: Dict[str, Any]) -> Tuple[Track, List[Artist], Optional[Album]]:
        track, artists, album = self.from_am_track(am_track)
        attributes = am_track.get('attributes') or {}
        previews = attributes.get('previews') or []
        track = replace(track, applemusic=TrackAppleMusic(
            catalog_id=(attributes.get('playParams') or {}).get('id'),
            preview_url=previews[0].get('url') if previews else None,
        ))
        return track, artists, album

    @staticmethod
    def _store(playlist: Playlist, converted: Tuple[Track, List[Artist], Optional[Album]]) -> None:
        track, artists, album = converted
        playlist.store_track(track)
        if album is not None:
            playlist.store_album(album)
        for artist in artists:
            playlist.store_artist(artist)

    def from_am_library_playlist(self, am_playlist: Dict[str, Any]) -> Playlist:
        attributes = am_playlist.get('attributes') or {}
        play_params = attributes.get('playParams') or {}
        library_id = play_params.get('id') or am_playlist.get('id')
        global_id = play_params.get('globalId')

        playlist = Playlist(
            id=derive_id(global_id or library_id),
            name=attributes.get('name') or '',
            description=(attributes.get('description') or {}).get('standard'),
            applemusic=PlaylistAppleMusic(
                library_id=library_id,
                global_id=global_id,
                public=attributes.get('isPublic'),
                editable=attributes.get('canEdit'),
                image_url=(attributes.get('artwork') or {}).get('url'),
            ),
        )

        am_tracks = paginate(
            lambda offset, limit: self._page(f"/me/library/playlists/{library_id}/tracks", offset, limit),
            PLAYLISTS_CHUNK_SIZE,
            label=f"playlist '{playlist.name}'",
            max_items=MAX_PLAYLIST_TRACKS,
        )
        try:
            for am_track in am_tracks:
                self._store(playlist, self.from_am_library_track(am_track))
        except RemoteNotFound:
            # Apple Music answers 404 for the tracks of an empty playlist.
            logger.debug(f"No tracks found for '{playlist.name}'")

        logger.info(f"Got {len(playlist.tracks)} playlist track(s) for '{playlist.name}'")
        return playlist

    def from_am_catalog_playlist(self, am_playlist: Dict[str, Any]) -> Playlist:
        attributes = am_playlist.get('attributes') or {}
        global_id = (attributes.get('playParams') or {}).get('id') or am_playlist.get('id')

        playlist = Playlist(
            id=derive_id(global_id),
            name=attributes.get('name') or '',
            description=(attributes.get('description') or {}).get('standard'),
            applemusic=PlaylistAppleMusic(global_id=global_id,
                                          image_url=artwork_url(attributes.get('artwork'))),
        )

        curator = attributes.get('curatorName')
        if curator:
            author = User(id=derive_id(curator), display_name=curator)
            playlist.author_id = author.id
            playlist.store_user(author)

        for am_track in ((am_playlist.get('relationships') or {}).get('tracks') or {}).get('data') or []:
            self._store(playlist, self.from_am_catalog_track(am_track))
        return playlist

    # Download

    def _download_library_playlists(self) -> Iterator[Playlist]:
        logger.info("Querying library playlists...")
        am_playlists = paginate(
            lambda offset, limit: self._page('/me/library/playlists', offset, limit),
            PLAYLISTS_CHUNK_SIZE,
            label='library playlists',
        )
        named = (p for p in am_playlists if (p.get('attributes') or {}).get('name') is not None)
        yield from isolate_failures(
            named,
            self.from_am_library_playlist,
            describe=lambda p: f"download playlist '{p['attributes']['name']}'",
        )

    def _download_catalog_playlist(self, storefront: str, am_id: str) -> Iterator[Playlist]:
        logger.info("Querying catalog playlist...")
        response = with_rate_limit_retry(
            lambda: self.get_json(f"/catalog/{storefront}/playlists/{am_id}"),
            f"query catalog playlist {am_id}",
        )
        for am_playlist in response.get('data') or []:
            yield self.from_am_catalog_playlist(am_playlist)

    def download(self, ref: Ref) -> Iterator[Playlist]:
        if ref.resource_type == ResourceType.SPECIAL and ref.resource_location == SpecialLocation.PLAYLISTS:
            return self._download_library_playlists()
        if ref.resource_type == ResourceType.PLAYLIST:
            storefront, am_id = ref.resource_location
            return self._download_catalog_playlist(storefront, am_id)
        raise Unsupported("download", self.name, f"cannot download {ref}")

    # Upload

    def to_am_catalog_track_id(self, track: Track, playlist: Playlist) -> Optional[str]:
        """Find the catalog id for a track, using the stored id or a catalog search."""
        if track.applemusic and track.applemusic.catalog_id:
            return track.applemusic.catalog_id

        phrase = playlist.track_search_phrase(track)
        response = with_rate_limit_retry(
            lambda: self.get_json(f"/catalog/{self.storefront}/search", params={
                'term': phrase, 'limit': 1, 'offset': 0, 'types': 'songs',
            }),
            f"search for '{phrase}'",
        )
        songs = (((response.get('results') or {}).get('songs') or {}).get('data')) or []
        if not songs:
            logger.warning(f"No match on Apple Music for '{phrase}'")
            return None

        attributes = songs[0].get('attributes') or {}
        logger.info(f"Matched '{track.name}' with '{attributes.get('name')}' "
                    f"by '{attributes.get('artistName')}' from Apple Music")
        return songs[0].get('id')

    def _match_track(self, track: Track, playlist: Playlist) -> Optional[str]:
        try:
            return self.to_am_catalog_track_id(track, playlist)
        except (RateLimited, AuthenticationFailed):
            raise
        except DrumError as e:
            logger.warning(f"Leaving '{track.name}' unmatched, the lookup failed: {e}")
            return None

    def upload_playlist(self, playlist: Playlist) -> Playlist:
        """Create a library playlist holding the tracks that could be matched."""
        tracks: List[Track] = []
        catalog_ids: List[str] = []
        for track in playlist.tracks:
            catalog_id = self._match_track(track, playlist)
            if catalog_id is None:
                tracks.append(track)
                continue
            catalog_ids.append(catalog_id)
            if track.applemusic and track.applemusic.catalog_id == catalog_id:
                tracks.append(track)
            else:
                tracks.append(track.with_applemusic_catalog_id(catalog_id))

        attributes = {'name': playlist.name}
        if playlist.description is not None:
            attributes['description'] = playlist.description
        body = {
            'attributes': attributes,
            'relationships': {
                'tracks': {'data': [{'id': am_id, 'type': 'songs'} for am_id in catalog_ids]},
            },
        }

        logger.info(f"Uploading '{playlist.name}' with {len(catalog_ids)} track(s)...")
        response = with_rate_limit_retry(lambda: self.post_json('/me/library/playlists', body),
                                         f"create playlist '{playlist.name}'")
        created = (response.get('data') or [{}])[0]
        return replace(
            playlist,
            tracks=tracks,
            applemusic=PlaylistAppleMusic(library_id=created.get('id'), editable=True, public=False),
        )

    def upload(self, ref: Ref, playlists: Iterable[Playlist]) -> Optional[List[Playlist]]:
        if ref.resource_type != ResourceType.SPECIAL or ref.resource_location != SpecialLocation.PLAYLISTS:
            raise Unsupported("upload", self.name, "can only upload to @applemusic/playlists")
        return list(isolate_failures(
            playlists,
            self.upload_playlist,
            describe=lambda p: f"upload playlist '{p.name}'",
            attempts=1,
        ))

    def preview(self, ref: Ref) -> str:
        return render_preview(self.download(ref))

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from drum.domain.identity import store

R = TypeVar("R", bound="_Record")


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None so absent fields are omitted from documents."""
    return {k: v for k, v in data.items() if v is not None}


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


class _Record:
    """Flat, scalar-only external-service sub-record."""

    def to_json(self) -> Dict[str, Any]:
        return _compact({f.name: getattr(self, f.name) for f in fields(self)})

    @classmethod
    def from_json(cls: Type[R], data: Optional[Dict[str, Any]]) -> Optional[R]:
        if data is None:
            return None
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})


# Service-specific sub-records. Each carries only that service's opaque identifiers and URLs.

@dataclass(frozen=True)
class TrackSpotify(_Record):
    id: Optional[str] = None


@dataclass(frozen=True)
class TrackAppleMusic(_Record):
    library_id: Optional[str] = None
    catalog_id: Optional[str] = None
    preview_url: Optional[str] = None


@dataclass(frozen=True)
class ArtistSpotify(_Record):
    id: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class AlbumSpotify(_Record):
    id: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class AlbumAppleMusic(_Record):
    image_url: Optional[str] = None


@dataclass(frozen=True)
class UserSpotify(_Record):
    id: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class PlaylistSpotify(_Record):
    id: Optional[str] = None
    public: Optional[bool] = None
    collaborative: Optional[bool] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class PlaylistAppleMusic(_Record):
    library_id: Optional[str] = None
    global_id: Optional[str] = None
    public: Optional[bool] = None
    editable: Optional[bool] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Artist:
    """An artist. Identity is the internal id only."""

    id: str
    name: Optional[str] = None
    spotify: Optional[ArtistSpotify] = None

    def to_json(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "name": self.name,
            "spotify": self.spotify.to_json() if self.spotify else None,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Artist":
        return cls(
            id=data["id"],
            name=data.get("name"),
            spotify=ArtistSpotify.from_json(data.get("spotify")),
        )


@dataclass(frozen=True)
class Album:
    """An album, i.e. a composition of tracks by one or more artists."""

    id: str
    name: Optional[str] = None
    artist_ids: List[str] = field(default_factory=list)
    spotify: Optional[AlbumSpotify] = None
    applemusic: Optional[AlbumAppleMusic] = None

    def to_json(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "name": self.name,
            "artist_ids": list(self.artist_ids) or None,
            "spotify": self.spotify.to_json() if self.spotify else None,
            "applemusic": self.applemusic.to_json() if self.applemusic else None,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Album":
        return cls(
            id=data["id"],
            name=data.get("name"),
            artist_ids=list(data.get("artist_ids") or []),
            spotify=AlbumSpotify.from_json(data.get("spotify")),
            applemusic=AlbumAppleMusic.from_json(data.get("applemusic")),
        )


@dataclass(frozen=True)
class User:
    """A user, e.g. the author of a playlist or whoever added a track."""

    id: str
    display_name: Optional[str] = None
    spotify: Optional[UserSpotify] = None

    def to_json(self) -> Dict[str, Any]:
        return _compact({
            "id": self.id,
            "display_name": self.display_name,
            "spotify": self.spotify.to_json() if self.spotify else None,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=data["id"],
            display_name=data.get("display_name"),
            spotify=UserSpotify.from_json(data.get("spotify")),
        )


@dataclass(frozen=True)
class Track:
    """A track/song.

    Artist, composer, album and added-by ids are foreign keys into the pools of
    the owning playlist and are only meaningful there.
    """

    name: str
    artist_ids: List[str] = field(default_factory=list)
    composer_ids: List[str] = field(default_factory=list)
    album_id: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    duration_ms: Optional[int] = None
    explicit: Optional[bool] = None
    isrc: Optional[str] = None
    released_at: Optional[datetime] = None
    added_at: Optional[datetime] = None
    added_by: Optional[str] = None
    spotify: Optional[TrackSpotify] = None
    applemusic: Optional[TrackAppleMusic] = None

    def with_spotify_id(self, spotify_id: str) -> "Track":
        """Return a copy with the Spotify id backfilled."""
        return replace(self, spotify=TrackSpotify(id=spotify_id))

    def with_applemusic_catalog_id(self, catalog_id: str) -> "Track":
        """Return a copy with the Apple Music catalog id backfilled."""
        current = self.applemusic or TrackAppleMusic()
        return replace(self, applemusic=replace(current, catalog_id=catalog_id))

    def to_json(self) -> Dict[str, Any]:
        return _compact({
            "name": self.name,
            "artist_ids": list(self.artist_ids),
            "composer_ids": list(self.composer_ids) or None,
            "album_id": self.album_id,
            "genres": list(self.genres) or None,
            "duration_ms": self.duration_ms,
            "explicit": self.explicit,
            "isrc": self.isrc,
            "released_at": _format_datetime(self.released_at),
            "added_at": _format_datetime(self.added_at),
            "added_by": self.added_by,
            "spotify": self.spotify.to_json() if self.spotify else None,
            "applemusic": self.applemusic.to_json() if self.applemusic else None,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Track":
        return cls(
            name=data["name"],
            artist_ids=list(data.get("artist_ids") or []),
            composer_ids=list(data.get("composer_ids") or []),
            album_id=data.get("album_id"),
            genres=list(data.get("genres") or []),
            duration_ms=data.get("duration_ms"),
            explicit=data.get("explicit"),
            isrc=data.get("isrc"),
            released_at=_parse_datetime(data.get("released_at")),
            added_at=_parse_datetime(data.get("added_at")),
            added_by=data.get("added_by"),
            spotify=TrackSpotify.from_json(data.get("spotify")),
            applemusic=TrackAppleMusic.from_json(data.get("applemusic")),
        )


@dataclass
class Playlist:
    """An ordered list of tracks plus the deduplicated entity pools they reference.

    Track order is playback order. The artist, album and user pools are keyed by
    internal id; their iteration order carries no meaning.
    """

    id: Optional[str]
    name: str
    description: Optional[str] = None
    author_id: Optional[str] = None
    path: List[str] = field(default_factory=list)
    spotify: Optional[PlaylistSpotify] = None
    applemusic: Optional[PlaylistAppleMusic] = None
    tracks: List[Track] = field(default_factory=list)
    artists: Dict[str, Artist] = field(default_factory=dict)
    albums: Dict[str, Album] = field(default_factory=dict)
    users: Dict[str, User] = field(default_factory=dict)

    def store_track(self, track: Track) -> None:
        """Append a track, preserving source order."""
        self.tracks.append(track)

    def store_artist(self, artist: Artist) -> None:
        store(self.artists, artist)

    def store_album(self, album: Album) -> None:
        store(self.albums, album)

    def store_user(self, user: User) -> None:
        store(self.users, user)

    @property
    def author(self) -> Optional[User]:
        if self.author_id is None:
            return None
        return self.users.get(self.author_id)

    def artist_names(self, track: Track) -> List[str]:
        """Resolve a track's artist ids against this playlist's artist pool."""
        names = []
        for artist_id in track.artist_ids:
            artist = self.artists.get(artist_id)
            if artist is not None and artist.name:
                names.append(artist.name)
        return names

    def track_search_phrase(self, track: Track) -> str:
        """Free-text phrase used to look a track up on another service."""
        return " ".join([track.name, *self.artist_names(track)]).strip()

    def unresolved_artist_ids(self) -> List[str]:
        """Artist ids referenced by tracks or albums that are missing from the artist pool."""
        referenced: List[str] = []
        for track in self.tracks:
            referenced.extend(track.artist_ids)
            referenced.extend(track.composer_ids)
        for album in self.albums.values():
            referenced.extend(album.artist_ids)
        missing = []
        for artist_id in referenced:
            if artist_id not in self.artists and artist_id not in missing:
                missing.append(artist_id)
        return missing

    def to_json(self) -> Dict[str, Any]:
        """Serialize to the nested, string-keyed persisted document."""
        return _compact({
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "author_id": self.author_id,
            "path": list(self.path) or None,
            "spotify": self.spotify.to_json() if self.spotify else None,
            "applemusic": self.applemusic.to_json() if self.applemusic else None,
            "users": [u.to_json() for u in self.users.values()] or None,
            "artists": [a.to_json() for a in self.artists.values()] or None,
            "albums": [a.to_json() for a in self.albums.values()] or None,
            "tracks": [t.to_json() for t in self.tracks] or None,
        })

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Playlist":
        """Parse the persisted document. Pools are rebuilt keyed by id."""
        playlist = cls(
            id=data.get("id"),
            name=data.get("name") or "",
            description=data.get("description"),
            author_id=data.get("author_id"),
            path=list(data.get("path") or []),
            spotify=PlaylistSpotify.from_json(data.get("spotify")),
            applemusic=PlaylistAppleMusic.from_json(data.get("applemusic")),
        )
        for raw_user in data.get("users") or []:
            playlist.store_user(User.from_json(raw_user))
        for raw_artist in data.get("artists") or []:
            playlist.store_artist(Artist.from_json(raw_artist))
        for raw_album in data.get("albums") or []:
            playlist.store_album(Album.from_json(raw_album))
        for raw_track in data.get("tracks") or []:
            playlist.store_track(Track.from_json(raw_track))
        return playlist

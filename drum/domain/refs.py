from dataclasses import dataclass
from enum import Enum
from typing import Any

TOKEN_PREFIX = '@'


class ResourceType(str, Enum):
    """Kind of resource a Ref points to. Services only use the subset they understand."""

    SPECIAL = 'special'
    PLAYLIST = 'playlist'
    ALBUM = 'album'
    ARTIST = 'artist'
    TRACK = 'track'
    USER = 'user'
    ANY = 'any'

    @classmethod
    def parse(cls, raw: str):
        """Map a path/URI segment such as 'playlist' to a ResourceType, or None."""
        try:
            resource_type = cls(raw)
        except ValueError:
            return None
        if resource_type in (cls.SPECIAL, cls.ANY):
            return None
        return resource_type


class SpecialLocation(str, Enum):
    """Named collections addressed by token refs such as '@spotify/playlists'."""

    PLAYLISTS = 'playlists'
    TRACKS = 'tracks'
    STDIN = 'stdin'
    STDOUT = 'stdout'


@dataclass(frozen=True)
class RawRef:
    """A half-parsed reference: either a token ('@...', sigil stripped) or a locator."""

    text: str
    is_token: bool

    @classmethod
    def parse(cls, raw: str) -> "RawRef":
        if raw.startswith(TOKEN_PREFIX):
            return cls(text=raw[len(TOKEN_PREFIX):], is_token=True)
        return cls(text=raw, is_token=False)


@dataclass(frozen=True)
class Ref:
    """A resolved reference owned by exactly one service.

    The location is opaque outside the owning service: a path, a
    (storefront, id) pair, a remote id or a SpecialLocation.
    """

    service_name: str
    resource_type: ResourceType
    resource_location: Any

    def __str__(self) -> str:
        location = self.resource_location
        if isinstance(location, SpecialLocation):
            return f"{TOKEN_PREFIX}{self.service_name}/{location.value}"
        return f"{self.service_name}:{self.resource_type.value}:{_location_text(location)}"


def _location_text(location: Any) -> str:
    if isinstance(location, Enum):
        return location.value
    if isinstance(location, (set, frozenset)):
        return '+'.join(sorted(_location_text(part) for part in location))
    if isinstance(location, tuple):
        return '/'.join(_location_text(part) for part in location)
    return str(location)

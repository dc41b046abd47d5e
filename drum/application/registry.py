import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from drum.domain.errors import RefUnresolved
from drum.domain.ports import MusicService
from drum.domain.refs import RawRef, Ref

logger = logging.getLogger(__name__)


class ServiceRegistry:
    """Ordered set of services that raw refs are resolved against.

    The order is the resolution priority: the first service whose parser
    accepts a raw ref owns it. Catch-all interpreters (the local file service
    accepts almost any string as a path) therefore have to come last, after
    every service with a more specific grammar.
    """

    def __init__(self, services: Sequence[MusicService]):
        names = [s.name for s in services]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate service names: {sorted(duplicates)}")
        self._services: Tuple[MusicService, ...] = tuple(services)

    @property
    def services(self) -> Tuple[MusicService, ...]:
        return self._services

    @property
    def names(self) -> List[str]:
        return [s.name for s in self._services]

    def service(self, name: str) -> MusicService:
        """Return the service registered under name."""
        for service in self._services:
            if service.name == name:
                return service
        raise KeyError(name)

    def try_resolve(self, raw_ref: RawRef) -> Optional[Ref]:
        for service in self._services:
            ref = service.parse_ref(raw_ref)
            if ref is not None:
                logger.debug(f"Resolved '{raw_ref.text}' via {service.name}: {ref}")
                return ref
        return None

    def resolve(self, raw: str) -> Ref:
        """Parse a user-supplied string and resolve it against the services in priority order.

        Raises:
            RefUnresolved: If no service claims the ref
        """
        raw_ref = RawRef.parse(raw)
        ref = self.try_resolve(raw_ref)
        if ref is None:
            raise RefUnresolved(raw, self.names)
        return ref

    def owner(self, ref: Ref) -> MusicService:
        """Return the service that produced ref."""
        return self.service(ref.service_name)

    def resolve_with_service(self, raw: str) -> Tuple[Ref, MusicService]:
        ref = self.resolve(raw)
        return ref, self.owner(ref)


def build_default_registry(services: Iterable[MusicService]) -> ServiceRegistry:
    """Build a registry from the given services in the documented priority order.

    Priority, highest first:
        1. stdio       ('-', '@stdin', '@stdout')
        2. mock        ('@mock')
        3. spotify     ('@spotify/...', open.spotify.com links, spotify: URIs)
        4. applemusic  ('@applemusic/...', music.apple.com links)
        5. file        (any other locator, interpreted as a local path)
    """
    priority = ['stdio', 'mock', 'spotify', 'applemusic', 'file']
    by_name = {s.name: s for s in services}
    unknown = set(by_name) - set(priority)
    if unknown:
        raise ValueError(f"No priority defined for services: {sorted(unknown)}")
    return ServiceRegistry([by_name[n] for n in priority if n in by_name])

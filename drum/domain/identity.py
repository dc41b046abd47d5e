import hashlib
from typing import Dict, Optional, Protocol, TypeVar


class Identified(Protocol):
    id: str


E = TypeVar("E", bound=Identified)


def derive_id(external_id: Optional[str]) -> Optional[str]:
    """Derive a stable internal id from a service-qualified external id.

    The mapping is a SHA-1 hex digest: deterministic across calls and process
    runs, and collision-resistant for distinct inputs. An absent external id
    maps to an absent internal id.
    """
    if external_id is None:
        return None
    return hashlib.sha1(external_id.encode('utf-8')).hexdigest()


def store(pool: Dict[str, E], entity: E) -> E:
    """Insert entity into pool unless its id is already present (first write wins).

    Returns the entity that ends up in the pool, which is the earlier one when the
    id was already taken.
    """
    existing = pool.get(entity.id)
    if existing is not None:
        return existing
    pool[entity.id] = entity
    return entity

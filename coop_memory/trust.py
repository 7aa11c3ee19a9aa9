"""Trust gating for memory store tiers.

Trust levels are ordered from most to least privileged:
``full`` > ``inner`` > ``familiar`` > ``public``. Every observation lives in
one store tier (``private``, ``shared``, ``social``) and each tier has a
minimum trust level. Callers only ever see tiers at or below their own
privilege.
"""

from enum import Enum
from typing import Iterable, List, Optional

STORE_PRIVATE = "private"
STORE_SHARED = "shared"
STORE_SOCIAL = "social"

# Ordered from most to least restricted.
STORES = (STORE_PRIVATE, STORE_SHARED, STORE_SOCIAL)


class TrustLevel(str, Enum):
    """Caller privilege rank. Serializes as a lowercase token."""

    FULL = "full"
    INNER = "inner"
    FAMILIAR = "familiar"
    PUBLIC = "public"

    @property
    def rank(self) -> int:
        """0 for the most privileged level, 3 for the least."""
        return _RANKS[self]

    def at_least(self, other: "TrustLevel") -> bool:
        """True if this level is as privileged as ``other`` or more."""
        return self.rank <= other.rank


_RANKS = {
    TrustLevel.FULL: 0,
    TrustLevel.INNER: 1,
    TrustLevel.FAMILIAR: 2,
    TrustLevel.PUBLIC: 3,
}

_STORE_FOR_TRUST = {
    TrustLevel.FULL: STORE_PRIVATE,
    TrustLevel.INNER: STORE_SHARED,
    TrustLevel.FAMILIAR: STORE_SOCIAL,
    TrustLevel.PUBLIC: STORE_SOCIAL,
}

_MIN_TRUST_FOR_STORE = {
    STORE_PRIVATE: TrustLevel.FULL,
    STORE_SHARED: TrustLevel.INNER,
    STORE_SOCIAL: TrustLevel.FAMILIAR,
}


def trust_to_store(trust: TrustLevel) -> str:
    """Default store tier for observations written at ``trust``."""
    return _STORE_FOR_TRUST[TrustLevel(trust)]


def min_trust_for_store(store: str) -> TrustLevel:
    """Minimum trust needed to read ``store``. Unknown stores map to public."""
    return _MIN_TRUST_FOR_STORE.get(store, TrustLevel.PUBLIC)


def accessible_stores(trust: TrustLevel) -> List[str]:
    """Store tiers visible at ``trust``, most restricted first.

    Public callers see nothing: ``social`` is gated at ``familiar``.
    """
    trust = TrustLevel(trust)
    return [store for store in STORES if trust.at_least(_MIN_TRUST_FOR_STORE[store])]


def trust_to_str(trust: TrustLevel) -> str:
    return TrustLevel(trust).value


def trust_from_str(value: Optional[str]) -> TrustLevel:
    """Parse a wire token. Anything unrecognised is treated as public."""
    try:
        return TrustLevel((value or "").strip().lower())
    except ValueError:
        return TrustLevel.PUBLIC


def gate_stores(requested: Iterable[str], trust: TrustLevel) -> List[str]:
    """Intersect a requested store filter with what ``trust`` may see.

    An empty request means "every store I can see". The result keeps the
    caller's order and drops duplicates.
    """
    allowed = accessible_stores(trust)
    requested = list(requested)
    if not requested:
        return allowed
    out: List[str] = []
    for store in requested:
        if store in allowed and store not in out:
            out.append(store)
    return out

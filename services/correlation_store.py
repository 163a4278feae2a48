"""
Correlation store for in-flight sagas

Maps correlation keys to saga records, one store per saga family. Entries
carry an expiry so abandoned prompts and bridges do not accumulate; a
periodic job calls sweep() on every store.

Correlation keys are a tagged variant: the saga kind is an explicit enum
field and the hyphenated string is only the wire form sent to the signing
collaborator.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SagaKind(Enum):
    """Saga kinds and their wire prefixes"""
    COMMIT = "commit-"
    REGISTER = "register-"
    TEST_COMMIT = "testcommit-"
    TEST_REGISTER = "test_register-"
    TEST_TRANSFER = "testtransfer-"
    BRIDGE_DEPOSIT = "bridge-eoa-"
    BRIDGE_FUNDING = "bridge-fund-"
    WALLET_SELECT = "wallet-select-"
    TEST_WALLET_PICK = "test-wallet-pick-"
    SUBDOMAIN = "subdomain-"

    @property
    def prefix(self) -> str:
        return self.value


# Longest prefix first so that no kind can shadow a longer one
_PREFIXES: List[Tuple[str, SagaKind]] = sorted(
    ((kind.prefix, kind) for kind in SagaKind),
    key=lambda item: len(item[0]),
    reverse=True,
)

_REVEAL_OF = {
    SagaKind.COMMIT: SagaKind.REGISTER,
    SagaKind.TEST_COMMIT: SagaKind.TEST_REGISTER,
}
_COMMIT_OF = {reveal: commit for commit, reveal in _REVEAL_OF.items()}


@dataclass(frozen=True)
class CorrelationKey:
    """Identifies one in-flight saga instance"""
    kind: SagaKind
    body: str

    @classmethod
    def build(cls, kind: SagaKind, channel_id: str, user_id: str = '',
              label: str = '', timestamp: Optional[int] = None) -> 'CorrelationKey':
        parts = [str(channel_id)]
        if user_id:
            parts.append(str(user_id))
        if label:
            parts.append(label)
        if timestamp is not None:
            parts.append(str(timestamp))
        return cls(kind, "-".join(parts))

    @classmethod
    def parse(cls, raw: str) -> Optional['CorrelationKey']:
        """Parse a wire key; None when the prefix is not one of ours"""
        if not raw:
            return None
        for prefix, kind in _PREFIXES:
            if raw.startswith(prefix) and len(raw) > len(prefix):
                return cls(kind, raw[len(prefix):])
        return None

    @property
    def is_commit(self) -> bool:
        return self.kind in _REVEAL_OF

    @property
    def is_reveal(self) -> bool:
        return self.kind in _COMMIT_OF

    def reveal_key(self) -> 'CorrelationKey':
        """Key for the reveal step of this commitment (same body, reveal kind)"""
        if not self.is_commit:
            raise ValueError(f"{self.kind.name} key has no reveal step")
        return CorrelationKey(_REVEAL_OF[self.kind], self.body)

    def commit_key(self) -> 'CorrelationKey':
        """Originating commitment key of a reveal key"""
        if not self.is_reveal:
            raise ValueError(f"{self.kind.name} key is not a reveal key")
        return CorrelationKey(_COMMIT_OF[self.kind], self.body)

    def __str__(self) -> str:
        return f"{self.kind.prefix}{self.body}"


class CorrelationStore(Generic[T]):
    """In-memory saga record store with optional per-entry TTL"""

    def __init__(self, name: str, default_ttl: Optional[int] = None,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[CorrelationKey, Dict[str, Any]] = {}
        self._evict_listeners: List[Callable[[CorrelationKey, T], None]] = []

    def on_evict(self, listener: Callable[[CorrelationKey, T], None]) -> None:
        """Register a callback run for every entry removed by sweep()"""
        self._evict_listeners.append(listener)

    def get(self, key: CorrelationKey) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry['expires'] is not None and entry['expires'] <= self._clock():
            # Expired but not yet swept
            return None
        return entry['value']

    def put(self, key: CorrelationKey, value: T, ttl: Optional[int] = None) -> Optional[T]:
        """Store value under key, returning the record it replaced (if any)"""
        ttl = ttl if ttl is not None else self.default_ttl
        now = self._clock()
        previous = self._entries.get(key)
        self._entries[key] = {
            'value': value,
            'created': now,
            'expires': now + ttl if ttl is not None else None,
        }
        logger.debug(f"📥 STORE[{self.name}]: put {key}")
        return previous['value'] if previous else None

    def delete(self, key: CorrelationKey) -> Optional[T]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            logger.debug(f"🗑️ STORE[{self.name}]: deleted {key}")
            return entry['value']
        return None

    def pop(self, key: CorrelationKey) -> Optional[T]:
        """Atomically consume a live record"""
        value = self.get(key)
        if value is not None:
            self.delete(key)
        return value

    def sweep(self) -> int:
        """Remove expired entries and notify eviction listeners"""
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if entry['expires'] is not None and entry['expires'] <= now
        ]
        for key in expired:
            value = self._entries.pop(key)['value']
            for listener in self._evict_listeners:
                try:
                    listener(key, value)
                except Exception as e:
                    logger.warning(f"⚠️ STORE[{self.name}]: evict listener failed for {key}: {e}")
        if expired:
            logger.info(f"🧹 STORE[{self.name}]: swept {len(expired)} expired entries")
        return len(expired)

    def keys(self) -> List[CorrelationKey]:
        return list(self._entries.keys())

    def __contains__(self, key: CorrelationKey) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


class SagaStores:
    """One correlation store per saga family"""

    def __init__(self, commitment_ttl: Optional[int] = None, bridge_ttl: Optional[int] = None,
                 selection_ttl: Optional[int] = None, subdomain_ttl: Optional[int] = None,
                 clock: Callable[[], float] = time.time):
        self.commitments: CorrelationStore = CorrelationStore('commitments', commitment_ttl, clock)
        self.bridges: CorrelationStore = CorrelationStore('bridges', bridge_ttl, clock)
        self.selections: CorrelationStore = CorrelationStore('selections', selection_ttl, clock)
        self.subdomains: CorrelationStore = CorrelationStore('subdomains', subdomain_ttl, clock)
        self.transfers: CorrelationStore = CorrelationStore('transfers', subdomain_ttl, clock)

    @classmethod
    def from_settings(cls, settings) -> 'SagaStores':
        return cls(
            commitment_ttl=settings.max_commitment_age,
            bridge_ttl=settings.bridge_ttl,
            selection_ttl=settings.selection_ttl,
            subdomain_ttl=settings.subdomain_ttl,
        )

    def all(self) -> List[CorrelationStore]:
        return [self.commitments, self.bridges, self.selections, self.subdomains, self.transfers]

    def sweep_all(self) -> int:
        return sum(store.sweep() for store in self.all())

    def stats(self) -> Dict[str, int]:
        return {store.name: len(store) for store in self.all()}

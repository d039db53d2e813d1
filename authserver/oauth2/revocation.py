"""Process-local cache of revoked token hashes.

Lifecycle: construct, ``warm_up`` once during application startup, then
serve ``revoke``/``is_revoked`` for the life of the process. Nothing is
persisted on shutdown: the ``revoked`` flag in the credential store stays
authoritative and the engine checks it on every lookup, so the cache only
saves round trips for tokens already known to be dead.
"""

import logging
import threading
from collections.abc import Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

RevokedHashLoader = Callable[[], Awaitable[Iterable[str]]]


class RevocationCache:
    """Thread-safe set of revoked access/refresh token hashes."""

    def __init__(self) -> None:
        self._revoked: set[str] = set()
        self._lock = threading.Lock()
        self.warmed_up = False

    async def warm_up(self, loader: RevokedHashLoader) -> int:
        """Load revoked hashes from durable storage.

        Best effort: a failing loader is logged and leaves the cache as it
        was. Returns the number of hashes loaded.
        """
        try:
            hashes = list(await loader())
        except Exception:
            logger.exception("Revocation cache warm-up failed; relying on store revoked flag")
            return 0
        self.revoke_many(hashes)
        self.warmed_up = True
        logger.info("Revocation cache warmed up with %d token hashes", len(hashes))
        return len(hashes)

    def revoke(self, token_hash: str) -> None:
        with self._lock:
            self._revoked.add(token_hash)

    def revoke_many(self, token_hashes: Iterable[str]) -> None:
        with self._lock:
            self._revoked.update(token_hashes)

    def is_revoked(self, token_hash: str) -> bool:
        with self._lock:
            return token_hash in self._revoked

    def clear(self) -> None:
        with self._lock:
            self._revoked.clear()
            self.warmed_up = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._revoked)

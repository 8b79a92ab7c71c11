"""
Process-wide cache of Dataverse clients.

Clients are keyed by ``(server_url, client_id)``. Each entry remembers the
fingerprint of the config it was built from; a lookup with a different
fingerprint (rotated secret, new API version) replaces the entry.

Usage:
    from core.client_cache import ClientCache

    cache = ClientCache()
    client = cache.get_or_create(config)
"""

import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from .dataverse_client import DataverseClient, DataverseConfig

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class ClientCache:
    """Thread-safe cache of DataverseClient instances."""

    def __init__(self, factory: Optional[Callable[[DataverseConfig], DataverseClient]] = None):
        self._factory = factory or DataverseClient
        self._entries: Dict[CacheKey, Tuple[str, DataverseClient]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(config: DataverseConfig) -> CacheKey:
        return (config.server_url.rstrip('/').lower(), config.client_id or "")

    def get_or_create(self, config: DataverseConfig) -> DataverseClient:
        key = self._key(config)
        fingerprint = config.fingerprint()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                cached_fingerprint, client = entry
                if cached_fingerprint == fingerprint:
                    return client
                logger.info(f"Configuration changed for {key[0]}; rebuilding client")
            client = self._factory(config)
            self._entries[key] = (fingerprint, client)
            return client

    def invalidate(self, config: DataverseConfig) -> bool:
        """Drop the entry for ``config``. Returns True if one existed."""
        with self._lock:
            return self._entries.pop(self._key(config), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

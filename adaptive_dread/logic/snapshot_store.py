# adaptive_dread/logic/snapshot_store.py

"""Flat key/value backends for the persisted narrative snapshot."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import redis

from adaptive_dread.config import get_config

logger = logging.getLogger(__name__)


class SnapshotStore:
    """
    Interface for snapshot backends. Values are always strings; the state
    store owns encoding. Backends log their own I/O failures and report them
    by returning False from write and clear.
    """

    def read(self) -> Dict[str, str]:
        raise NotImplementedError("Subclasses must implement read")

    def write(self, snapshot: Dict[str, str]) -> bool:
        raise NotImplementedError("Subclasses must implement write")

    def clear(self) -> bool:
        raise NotImplementedError("Subclasses must implement clear")


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def read(self) -> Dict[str, str]:
        return dict(self._data)

    def write(self, snapshot: Dict[str, str]) -> bool:
        self._data = dict(snapshot)
        return True

    def clear(self) -> bool:
        self._data.clear()
        return True


class RedisSnapshotStore(SnapshotStore):
    """Stores the snapshot as one Redis hash."""

    def __init__(self, client: Optional[redis.Redis] = None, key: Optional[str] = None):
        config = get_config()
        self._key = key or config.SNAPSHOT_KEY
        if client is None:
            client = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
            logger.info(f"Initialized Redis snapshot client: {config.REDIS_URL}")
        self._client = client

    @property
    def key(self) -> str:
        return self._key

    def read(self) -> Dict[str, str]:
        try:
            raw = self._client.hgetall(self._key) or {}
        except redis.RedisError as e:
            logger.warning(f"Snapshot read from {self._key} failed: {e}")
            return {}
        decoded: Dict[str, str] = {}
        for k, v in raw.items():
            try:
                field = k.decode("utf-8") if isinstance(k, bytes) else str(k)
                decoded[field] = v.decode("utf-8") if isinstance(v, bytes) else str(v)
            except UnicodeDecodeError as e:
                logger.warning(f"Skipping undecodable snapshot field {k!r} in {self._key}: {e}")
        return decoded

    def write(self, snapshot: Dict[str, str]) -> bool:
        try:
            pipe = self._client.pipeline()
            pipe.delete(self._key)
            if snapshot:
                pipe.hset(self._key, mapping=snapshot)
            pipe.execute()
            return True
        except redis.RedisError as e:
            logger.error(f"Snapshot write to {self._key} failed: {e}")
            return False

    def clear(self) -> bool:
        try:
            self._client.delete(self._key)
            return True
        except redis.RedisError as e:
            logger.error(f"Snapshot clear of {self._key} failed: {e}")
            return False

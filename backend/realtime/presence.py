"""
Presence registry: which live connections belong to which user.

Two interchangeable backends sit behind `PresenceRegistry`:
`InMemoryPresenceRegistry` for a single Daphne process and
`RedisPresenceRegistry` when several processes (and Celery workers) must see
the same presence. Pick one with the PRESENCE_BACKEND setting.
"""
import logging
import threading
from dataclasses import dataclass

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Connection:
    channel_name: str
    user_id: int


class PresenceRegistry:
    def register(self, user_id, connection):
        raise NotImplementedError

    def unregister(self, user_id, connection):
        raise NotImplementedError

    def connections_for(self, user_id):
        raise NotImplementedError

    def touch(self, user_id):
        """Keep a live user's entry from expiring. No-op for backends without expiry."""

    def is_online(self, user_id):
        return bool(self.connections_for(user_id))

    def size(self):
        """Number of users currently holding at least one connection."""
        raise NotImplementedError


class InMemoryPresenceRegistry(PresenceRegistry):
    """
    Process-local registry. Every read and write of the map happens under one
    lock so removing an emptied entry can never drop a connection registered
    concurrently for the same user.
    """

    def __init__(self):
        self._connections = {}
        self._lock = threading.Lock()

    def register(self, user_id, connection):
        with self._lock:
            self._connections.setdefault(user_id, set()).add(connection)

    def unregister(self, user_id, connection):
        with self._lock:
            live = self._connections.get(user_id)
            if live is None:
                return
            live.discard(connection)
            if not live:
                del self._connections[user_id]

    def connections_for(self, user_id):
        with self._lock:
            return set(self._connections.get(user_id, ()))

    def is_online(self, user_id):
        with self._lock:
            return user_id in self._connections

    def size(self):
        with self._lock:
            return len(self._connections)


class RedisPresenceRegistry(PresenceRegistry):
    """
    Shared registry stored as one Redis set per user.
    Redis deletes a set when its last member is removed, so the
    "entry exists iff it has connections" rule holds without extra locking.
    The set carries a TTL so a crashed process cannot leave users online
    forever; register and every inbound frame renew it.
    """
    key_prefix = 'presence:user:'

    def __init__(self, alias='default', ttl=None):
        from django_redis import get_redis_connection
        self._redis = get_redis_connection(alias)
        self._ttl = ttl if ttl is not None else settings.PRESENCE_TTL

    def _key(self, user_id):
        return f'{self.key_prefix}{user_id}'

    def register(self, user_id, connection):
        key = self._key(user_id)
        pipe = self._redis.pipeline()
        pipe.sadd(key, connection.channel_name)
        pipe.expire(key, self._ttl)
        pipe.execute()

    def touch(self, user_id):
        # EXPIRE on a missing key is a no-op, so this never resurrects an entry.
        self._redis.expire(self._key(user_id), self._ttl)

    def unregister(self, user_id, connection):
        self._redis.srem(self._key(user_id), connection.channel_name)

    def connections_for(self, user_id):
        members = self._redis.smembers(self._key(user_id))
        return {
            Connection(channel_name=m.decode() if isinstance(m, bytes) else m, user_id=user_id)
            for m in members
        }

    def is_online(self, user_id):
        return bool(self._redis.exists(self._key(user_id)))

    def size(self):
        return sum(1 for _ in self._redis.scan_iter(match=f'{self.key_prefix}*'))


_registry = None
_registry_lock = threading.Lock()


def get_presence_registry():
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                backend = import_string(settings.PRESENCE_BACKEND)
                _registry = backend()
                logger.info(f'Presence registry backend: {settings.PRESENCE_BACKEND}')
    return _registry


def reset_presence_registry():
    """Drop the process-wide registry (used by tests and on settings change)."""
    global _registry
    with _registry_lock:
        _registry = None

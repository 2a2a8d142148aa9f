"""
Client-side query cache.

Holds the last server-confirmed payload per query key on top of the Django
cache framework. A query key is a tuple whose first element names the entity
and whose remaining elements are parameters, e.g. ``("startup", "64f...")``
or ``("startups", {"search": "", "category": "ai"})``.

Entries are stored as ``{"data", "stale", "updated_at"}``. The backend
timeout is the inactivity window: every read refreshes it, so entries that
nobody reads are garbage collected by the cache itself.
"""
import asyncio
import hashlib
import json
import logging
import time

from asgiref.sync import sync_to_async
from django.conf import settings
from django.core.cache import caches

from .exceptions import CampusFoundersError

logger = logging.getLogger(__name__)

# Cache TTLs (in seconds)
QUERY_STALE_TIME = 0  # serve from cache without refetch for this long
QUERY_GC_TIME = 300  # 5 minutes of inactivity


def make_query_key(entity, *params):
    """Build a query key; dict params are copied so later mutation can't alter the key"""
    return (entity,) + tuple(dict(p) if isinstance(p, dict) else p for p in params)


def hash_query_key(query_key):
    """Stable backend key for a query key"""
    key_data = json.dumps(list(query_key), sort_keys=True, default=str)
    key_hash = hashlib.md5(key_data.encode()).hexdigest()
    return f"query:{query_key[0]}:{key_hash}"


def _part_matches(prefix_part, key_part):
    if isinstance(prefix_part, dict) and isinstance(key_part, dict):
        # Partial filter match: every filter in the prefix must agree
        return all(key_part.get(k) == v for k, v in prefix_part.items())
    return prefix_part == key_part


def matches_prefix(query_key, prefix):
    """True when ``prefix`` selects ``query_key`` (``("startups",)`` selects every list)"""
    if len(prefix) > len(query_key):
        return False
    return all(_part_matches(p, k) for p, k in zip(prefix, query_key))


class QueryCache:
    """
    Explicit cache service: read, write, subscribe, invalidate, fetch.

    Only fetches and the mutation controller write to it.
    """

    def __init__(self, backend=None, stale_time=None, gc_time=None, clock=time.time):
        self.backend = backend or caches[getattr(settings, 'QUERY_CACHE_ALIAS', 'default')]
        self.stale_time = stale_time if stale_time is not None else getattr(
            settings, 'QUERY_STALE_TIME', QUERY_STALE_TIME
        )
        self.gc_time = gc_time if gc_time is not None else getattr(
            settings, 'QUERY_GC_TIME', QUERY_GC_TIME
        )
        self.clock = clock
        self._queries = {}  # backend key -> query key
        self._fetchers = {}  # backend key -> callable returning fresh data
        self._listeners = {}  # backend key -> [callback(query_key, data)]
        self._fetch_generations = {}  # backend key -> int, bumped to discard in-flight fetches
        self._suspended = {}  # backend key -> number of pending mutations

    # ==================== READ ====================

    def get_entry(self, query_key):
        """Raw entry dict or None; reading keeps the entry alive"""
        cache_key = hash_query_key(query_key)
        entry = self.backend.get(cache_key)
        if entry is None:
            return None
        self.backend.touch(cache_key, self.gc_time)
        return entry

    def get(self, query_key, default=None):
        entry = self.get_entry(query_key)
        if entry is None:
            return default
        return entry['data']

    def is_stale(self, query_key):
        entry = self.get_entry(query_key)
        if entry is None or entry['stale']:
            return True
        return self.clock() - entry['updated_at'] > self.stale_time

    def find_queries(self, prefix):
        """Cached query keys selected by ``prefix``"""
        found = []
        for cache_key, query_key in list(self._queries.items()):
            if not matches_prefix(query_key, prefix):
                continue
            if self.backend.get(cache_key) is None:
                # Garbage collected by the backend
                self._forget(cache_key)
                continue
            found.append(query_key)
        return found

    # ==================== WRITE ====================

    def set(self, query_key, data, stale=False):
        cache_key = hash_query_key(query_key)
        entry = {'data': data, 'stale': stale, 'updated_at': self.clock()}
        self.backend.set(cache_key, entry, self.gc_time)
        self._queries[cache_key] = query_key
        self._notify(cache_key, query_key, data)

    def restore(self, query_key, entry):
        """Put back a snapshot taken with ``get_entry`` exactly as it was"""
        cache_key = hash_query_key(query_key)
        if entry is None:
            self.backend.delete(cache_key)
            self._notify(cache_key, query_key, None)
            return
        self.backend.set(cache_key, entry, self.gc_time)
        self._queries[cache_key] = query_key
        self._notify(cache_key, query_key, entry['data'])

    def mark_stale(self, query_key):
        cache_key = hash_query_key(query_key)
        entry = self.backend.get(cache_key)
        if entry is None:
            return False
        entry['stale'] = True
        self.backend.set(cache_key, entry, self.gc_time)
        return True

    def _mark_prefix_stale(self, prefix):
        invalidated = [query_key for query_key in self.find_queries(prefix) if self.mark_stale(query_key)]
        if invalidated:
            logger.info(f"Invalidated {len(invalidated)} queries matching {prefix!r}")
        return invalidated

    def invalidate(self, prefix, refetch_active=True):
        """
        Mark every query selected by ``prefix`` stale.

        Active queries (subscribed to, with a known fetcher) are refetched
        right away; the rest refetch on their next read.
        """
        invalidated = self._mark_prefix_stale(prefix)
        for query_key in invalidated:
            if refetch_active and self.is_active(query_key):
                try:
                    self.refetch(query_key)
                except CampusFoundersError as e:
                    # Stays stale; the next read retries
                    logger.warning(f"Background refetch of {query_key!r} failed: {str(e)}")
        return invalidated

    async def ainvalidate(self, prefix, refetch_active=True):
        """Async twin of ``invalidate``; active queries are refetched off the event loop"""
        invalidated = self._mark_prefix_stale(prefix)
        for query_key in invalidated:
            if refetch_active and self.is_active(query_key):
                try:
                    await self.arefetch(query_key)
                except CampusFoundersError as e:
                    logger.warning(f"Background refetch of {query_key!r} failed: {str(e)}")
        return invalidated

    def _forget(self, cache_key):
        self._queries.pop(cache_key, None)
        self._fetchers.pop(cache_key, None)
        if cache_key not in self._suspended:
            self._fetch_generations.pop(cache_key, None)

    def remove(self, query_key):
        cache_key = hash_query_key(query_key)
        self.backend.delete(cache_key)
        self._forget(cache_key)

    def clear(self):
        for cache_key in list(self._queries):
            self.backend.delete(cache_key)
        self._queries.clear()
        self._fetchers.clear()

    # ==================== SUBSCRIBE ====================

    def subscribe(self, query_key, callback):
        """Call ``callback(query_key, data)`` on every write; returns an unsubscribe callable"""
        cache_key = hash_query_key(query_key)
        self._listeners.setdefault(cache_key, []).append(callback)

        def unsubscribe():
            listeners = self._listeners.get(cache_key, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._listeners.pop(cache_key, None)

        return unsubscribe

    def is_active(self, query_key):
        cache_key = hash_query_key(query_key)
        return bool(self._listeners.get(cache_key)) and cache_key in self._fetchers

    def _notify(self, cache_key, query_key, data):
        for callback in list(self._listeners.get(cache_key, [])):
            callback(query_key, data)

    # ==================== FETCH ====================

    def suspend(self, query_key):
        """Hold automatic refetches while a mutation is pending; in-flight fetches are discarded"""
        cache_key = hash_query_key(query_key)
        self._suspended[cache_key] = self._suspended.get(cache_key, 0) + 1
        self.cancel_fetches(query_key)

    def resume(self, query_key):
        cache_key = hash_query_key(query_key)
        remaining = self._suspended.get(cache_key, 0) - 1
        if remaining > 0:
            self._suspended[cache_key] = remaining
        else:
            self._suspended.pop(cache_key, None)

    def is_suspended(self, query_key):
        return hash_query_key(query_key) in self._suspended

    def cancel_fetches(self, query_key):
        cache_key = hash_query_key(query_key)
        self._fetch_generations[cache_key] = self._fetch_generations.get(cache_key, 0) + 1

    def fetch(self, query_key, fetcher=None):
        """Serve fresh cached data, otherwise refetch; remembers ``fetcher`` for reconciliation"""
        cache_key = hash_query_key(query_key)
        if fetcher is not None:
            self._fetchers[cache_key] = fetcher
        entry = self.get_entry(query_key)
        if entry is not None and (not self.is_stale(query_key) or self.is_suspended(query_key)):
            logger.debug(f"Cache HIT for {query_key!r}")
            return entry['data']
        logger.debug(f"Cache MISS for {query_key!r}")
        return self.refetch(query_key)

    def refetch(self, query_key):
        cache_key = hash_query_key(query_key)
        fetcher = self._fetchers.get(cache_key)
        if fetcher is None:
            raise KeyError(f"No fetcher registered for {query_key!r}")
        if self.is_suspended(query_key):
            logger.debug(f"Refetch of {query_key!r} held while a mutation is pending")
            return self.get(query_key)
        generation = self._fetch_generations.get(cache_key, 0)
        data = fetcher()
        return self._store_fetched(cache_key, query_key, generation, data)

    async def afetch(self, query_key, fetcher=None):
        cache_key = hash_query_key(query_key)
        if fetcher is not None:
            self._fetchers[cache_key] = fetcher
        entry = self.get_entry(query_key)
        if entry is not None and (not self.is_stale(query_key) or self.is_suspended(query_key)):
            return entry['data']
        return await self.arefetch(query_key)

    async def arefetch(self, query_key):
        cache_key = hash_query_key(query_key)
        fetcher = self._fetchers.get(cache_key)
        if fetcher is None:
            raise KeyError(f"No fetcher registered for {query_key!r}")
        if self.is_suspended(query_key):
            return self.get(query_key)
        generation = self._fetch_generations.get(cache_key, 0)
        if asyncio.iscoroutinefunction(fetcher):
            data = await fetcher()
        else:
            data = await sync_to_async(fetcher)()
        return self._store_fetched(cache_key, query_key, generation, data)

    def _store_fetched(self, cache_key, query_key, generation, data):
        if self._fetch_generations.get(cache_key, 0) != generation or self.is_suspended(query_key):
            logger.debug(f"Discarded superseded fetch for {query_key!r}")
            return self.get(query_key, data)
        self.set(query_key, data)
        return data

"""
Optimistic mutation engine.

A mutation snapshots every affected query, installs a locally computed
value, calls the backend, and then either marks the queries stale for
reconciliation (success) or puts every snapshot back (failure). Rollback is
all-or-nothing across the affected queries.

Overlapping mutations on one query are ordered by a per-query generation
counter. A mutation's outcome is applied only while no later-issued mutation
on that query is still pending or has already succeeded:

- success of a superseded mutation is discarded (the later one reconciles);
- failure of a mutation with a pending successor hands its snapshot to that
  successor, so the successor's rollback target skips the failed value;
- failure of a mutation overtaken by a later success leaves the query stale;
- a query whose success was superseded is marked stale once the last
  mutation on it settles, even if that one rolls back.
"""
import asyncio
import logging

from asgiref.sync import sync_to_async

from .exceptions import CampusFoundersError, GENERIC_ERROR_MESSAGE
from .notifications import notify_error
from .query_cache import hash_query_key

logger = logging.getLogger(__name__)


def _as_key_list(keys):
    # A single query key is a tuple; several are passed as a list
    if isinstance(keys, tuple):
        return [keys]
    return list(keys)


class MutationResult:
    """Outcome of a mutation; failures are reported here rather than raised"""

    def __init__(self, data=None, error=None, message=None):
        self.data = data
        self.error = error
        self.message = message

    @property
    def ok(self):
        return self.error is None

    def __repr__(self):
        state = 'ok' if self.ok else type(self.error).__name__
        return f'<MutationResult {state}>'


class PendingMutation:
    """A mutation whose optimistic values are installed and whose outcome is not known yet"""

    def __init__(self, controller, keys, snapshots, generations, invalidate=(), error_message=None):
        self.controller = controller
        self.keys = keys  # [(backend key, query key)]
        self.snapshots = snapshots  # backend key -> entry or None
        self.generations = generations  # backend key -> int
        self.invalidate = list(invalidate)
        self.error_message = error_message or GENERIC_ERROR_MESSAGE
        self.settled = False

    def succeed(self, data=None):
        return self.controller._settle_success(self, data)

    def fail(self, error):
        return self.controller._settle_failure(self, error)

    async def asucceed(self, data=None):
        return await self.controller._asettle_success(self, data)

    async def afail(self, error):
        return await self.controller._asettle_failure(self, error)


class MutationController:
    """Runs the snapshot / apply / reconcile / rollback protocol against a QueryCache"""

    def __init__(self, cache, notify=notify_error):
        self.cache = cache
        self.notify = notify
        self._generations = {}  # backend key -> last issued generation
        self._confirmed = {}  # backend key -> newest generation that succeeded
        self._pending = {}  # backend key -> [PendingMutation] in issue order
        self._unreconciled = set()  # backend keys whose success was superseded

    def begin(self, keys, update, invalidate=(), error_message=None):
        """
        Snapshot and optimistically update ``keys``.

        Args:
            keys: a query key, or a list of query keys
            update: pure ``old -> new`` callable applied to every key, or a
                list of callables aligned with ``keys``
            invalidate: extra query keys/prefixes to mark stale on success
            error_message: fallback notification text on failure
        """
        query_keys = _as_key_list(keys)
        if callable(update):
            updates = [update] * len(query_keys)
        else:
            updates = list(update)
            if len(updates) != len(query_keys):
                raise ValueError("One update per query key is required")

        for query_key in query_keys:
            self.cache.suspend(query_key)

        snapshots = {}
        new_values = []
        try:
            for query_key, compute in zip(query_keys, updates):
                snapshots[hash_query_key(query_key)] = self.cache.get_entry(query_key)
                # Separate read so the update cannot alter the snapshot
                current = self.cache.get_entry(query_key)
                new_values.append(compute(current['data'] if current is not None else None))
        except Exception:
            for query_key in query_keys:
                self.cache.resume(query_key)
            raise

        keys_with_hash = []
        generations = {}
        for query_key, value in zip(query_keys, new_values):
            cache_key = hash_query_key(query_key)
            keys_with_hash.append((cache_key, query_key))
            generation = self._generations.get(cache_key, 0) + 1
            self._generations[cache_key] = generation
            generations[cache_key] = generation
            if value is None and snapshots[cache_key] is None:
                # Nothing cached and nothing to show
                continue
            self.cache.set(query_key, value)

        mutation = PendingMutation(
            self, keys_with_hash, snapshots, generations,
            invalidate=invalidate, error_message=error_message,
        )
        for cache_key, _ in keys_with_hash:
            self._pending.setdefault(cache_key, []).append(mutation)
        logger.debug(f"Optimistic update applied to {[k for _, k in keys_with_hash]!r}")
        return mutation

    def perform(self, keys, update, remote_call, invalidate=(), error_message=None):
        """Run a whole mutation synchronously and return a MutationResult"""
        mutation = self.begin(keys, update, invalidate=invalidate, error_message=error_message)
        try:
            data = remote_call()
        except CampusFoundersError as e:
            return mutation.fail(e)
        except Exception as e:
            # Unexpected bugs still propagate, but never with optimistic values left behind
            mutation.fail(e)
            raise
        return mutation.succeed(data)

    async def aperform(self, keys, update, remote_call, invalidate=(), error_message=None):
        """Async twin of ``perform``; overlapping calls on one key are ordered by generation"""
        mutation = self.begin(keys, update, invalidate=invalidate, error_message=error_message)
        try:
            if asyncio.iscoroutinefunction(remote_call):
                data = await remote_call()
            else:
                data = await sync_to_async(remote_call)()
        except CampusFoundersError as e:
            return await mutation.afail(e)
        except Exception as e:
            await mutation.afail(e)
            raise
        return await mutation.asucceed(data)

    def pending_count(self, query_key):
        return len(self._pending.get(hash_query_key(query_key), []))

    # ==================== SETTLEMENT ====================

    def _detach(self, mutation):
        if mutation.settled:
            raise RuntimeError("Mutation already settled")
        mutation.settled = True
        for cache_key, query_key in mutation.keys:
            pending = self._pending.get(cache_key, [])
            if mutation in pending:
                pending.remove(mutation)
            if not pending:
                self._pending.pop(cache_key, None)
            self.cache.resume(query_key)

    def _next_pending(self, cache_key, generation):
        for other in self._pending.get(cache_key, []):
            if other.generations[cache_key] > generation:
                return other
        return None

    def _forget(self, mutation):
        # Counters are only compared between mutations pending on the same key
        for cache_key, _ in mutation.keys:
            if cache_key not in self._pending:
                self._generations.pop(cache_key, None)
                self._confirmed.pop(cache_key, None)
                self._unreconciled.discard(cache_key)

    def _resolve_success(self, mutation):
        """Detach a succeeded mutation; returns the query keys to mark stale"""
        self._detach(mutation)
        reconcile = []
        for cache_key, query_key in mutation.keys:
            generation = mutation.generations[cache_key]
            self._confirmed[cache_key] = max(self._confirmed.get(cache_key, 0), generation)
            if self._next_pending(cache_key, generation) is not None:
                logger.debug(f"Success for {query_key!r} superseded by a later mutation")
                self._unreconciled.add(cache_key)
                continue
            reconcile.append(query_key)
        self._forget(mutation)
        return reconcile + mutation.invalidate

    def _resolve_failure(self, mutation, error):
        """Detach a failed mutation and write back its snapshots; returns the query keys to mark stale"""
        self._detach(mutation)
        restores = []
        stale = []
        for cache_key, query_key in mutation.keys:
            generation = mutation.generations[cache_key]
            snapshot = mutation.snapshots[cache_key]
            if self._confirmed.get(cache_key, 0) > generation:
                stale.append(query_key)
                continue
            successor = self._next_pending(cache_key, generation)
            if successor is not None:
                successor.snapshots[cache_key] = snapshot
                continue
            restores.append((query_key, snapshot))
            if cache_key in self._unreconciled and cache_key not in self._pending:
                # An earlier success was never reconciled
                stale.append(query_key)

        # Every snapshot is decided before any is written back
        for query_key, snapshot in restores:
            self.cache.restore(query_key, snapshot)
        if restores:
            logger.info(f"Rolled back {[k for k, _ in restores]!r} after {type(error).__name__}")
        self._forget(mutation)
        return stale

    def _failure_result(self, mutation, error):
        message = None
        if isinstance(error, CampusFoundersError):
            message = self.notify(error, mutation.error_message)
        return MutationResult(error=error, message=message)

    def _settle_success(self, mutation, data):
        for query_key in self._resolve_success(mutation):
            self.cache.invalidate(query_key)
        return MutationResult(data=data)

    def _settle_failure(self, mutation, error):
        for query_key in self._resolve_failure(mutation, error):
            self.cache.invalidate(query_key)
        return self._failure_result(mutation, error)

    async def _asettle_success(self, mutation, data):
        for query_key in self._resolve_success(mutation):
            await self.cache.ainvalidate(query_key)
        return MutationResult(data=data)

    async def _asettle_failure(self, mutation, error):
        for query_key in self._resolve_failure(mutation, error):
            await self.cache.ainvalidate(query_key)
        return self._failure_result(mutation, error)

"""Shared plumbing for the domain services"""
import logging

from .client import RemoteDataClient
from .mutations import MutationController
from .query_cache import QueryCache

logger = logging.getLogger(__name__)


class ApiService:
    """
    Base for domain services.

    Services that are built from one another share the same client, query
    cache and mutation controller, so an invalidation issued by one service
    reaches queries cached by another.
    """

    def __init__(self, client=None, cache=None, mutations=None):
        self.client = client or RemoteDataClient()
        self.cache = cache or QueryCache()
        self.mutations = mutations or MutationController(self.cache)

    def query(self, query_key, path, params=None, normalize=None):
        """Cached GET: served from the query cache when fresh"""
        return self.cache.fetch(
            query_key,
            lambda: self.client.get(path, params=params, normalize=normalize),
        )

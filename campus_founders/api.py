"""
Entry point for callers: one object holding every domain service over a
shared client, query cache and mutation controller.
"""
from campus_founders.core.client import RemoteDataClient
from campus_founders.core.mutations import MutationController
from campus_founders.core.query_cache import QueryCache
from campus_founders.investments.services import InvestmentService
from campus_founders.social.services import SocialService
from campus_founders.startups.services import StartupService


class CampusFoundersAPI:

    def __init__(self, client=None, cache=None, mutations=None):
        self.client = client or RemoteDataClient()
        self.cache = cache or QueryCache()
        self.mutations = mutations or MutationController(self.cache)

        shared = {'client': self.client, 'cache': self.cache, 'mutations': self.mutations}
        self.social = SocialService(**shared)
        self.startups = StartupService(**shared)
        self.investments = InvestmentService(**shared)

    def close(self):
        self.client.close()

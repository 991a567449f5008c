"""
Remote integrations.

Modules:
- rest_client: PostgREST-style client with retry and backoff
- remote_stores: Seen, verified, bank and mastery stores over REST
"""

from .remote_stores import BankItemStore, RestMasteryStore, RestSeenStore, VerifiedItemStore
from .rest_client import RestClient

__all__ = ["RestClient", "RestSeenStore", "VerifiedItemStore", "BankItemStore", "RestMasteryStore"]

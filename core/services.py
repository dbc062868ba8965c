"""
Process-wide service wiring for the routers.

Routers take services through Depends(get_token_service) /
Depends(get_distribution_service); tests swap them via
app.dependency_overrides.
"""
from fastapi import Depends

from utils.access_tokens import AccessTokenService
from utils.distribution import DistributionService
from utils.token_store import LegacyTokenAdapter, SqlTokenStore
from utils.usage_tracker import UsageRecorder

token_store = SqlTokenStore()
legacy_tokens = LegacyTokenAdapter()
usage_recorder = UsageRecorder(token_store.record_usage)


def get_token_service() -> AccessTokenService:
    return AccessTokenService(token_store, legacy=legacy_tokens, usage=usage_recorder)


def get_distribution_service(tokens: AccessTokenService = Depends(get_token_service)) -> DistributionService:
    return DistributionService(tokens.store, tokens, clock=tokens.clock)

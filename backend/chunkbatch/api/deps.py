"""Shared FastAPI dependencies."""

from functools import lru_cache

from fastapi import Header, HTTPException

from chunkbatch.services.provider import BatchProviderClient, get_provider


def get_owner_id(x_owner_id: str = Header(default="")) -> str:
    """Caller identity, set by the authenticating proxy in front of the service."""
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="X-Owner-Id header is required")
    return owner_id


@lru_cache(maxsize=1)
def _cached_provider() -> BatchProviderClient:
    return get_provider()


def get_batch_provider() -> BatchProviderClient:
    """The configured batch provider. Missing configuration -> 503."""
    try:
        return _cached_provider()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

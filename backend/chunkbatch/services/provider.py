"""Batch provider interface and the provider-neutral snapshot it reports."""

import hashlib
import json
import os
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Literal, Protocol

from chunkbatch.schemas.batch import BatchConfig

ProviderState = Literal["pending", "running", "succeeded", "failed", "cancelled", "expired"]
ItemStatus = Literal["running", "succeeded", "failed"]

PROVIDER_TERMINAL: frozenset[str] = frozenset({"succeeded", "failed", "cancelled", "expired"})


@dataclass(frozen=True)
class ProviderRequest:
    """One chunk's request. ``key`` is the chunk id and comes back on the item."""

    key: str
    system: str
    prompt: str


@dataclass(frozen=True)
class ProviderItem:
    key: str
    status: ItemStatus
    output: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProviderSnapshot:
    """Authoritative state of one provider batch at the moment it was read."""

    state: ProviderState
    items: tuple[ProviderItem, ...] = field(default_factory=tuple)
    error: str | None = None

    def fingerprint(self) -> str:
        """Stable digest; equal digests mean nothing changed on the provider side."""
        payload = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def by_key(self) -> dict[str, ProviderItem]:
        return {item.key: item for item in self.items}


class BatchProviderClient(Protocol):
    """What the scheduler and reconciler need from a batch-inference service.

    ``submit`` raises ProviderRejected for requests the provider refuses and
    ProviderUnavailable when it cannot be reached. ``fetch`` only reads and
    raises ProviderUnavailable on any failure.
    """

    name: str

    def submit(self, job_key: str, requests: Sequence[ProviderRequest], config: BatchConfig) -> str: ...

    def fetch(self, handle: str, keys: Sequence[str]) -> ProviderSnapshot: ...

    def cancel(self, handle: str) -> None: ...


def get_provider() -> BatchProviderClient:
    """Build the provider named by ``BATCH_PROVIDER``.

    Raises ValueError if the provider is unknown or its env vars are missing.
    """
    name = os.environ.get("BATCH_PROVIDER", "gemini").strip().lower()
    if name == "gemini":
        from chunkbatch.services.gemini_batch import GeminiBatchProvider

        return GeminiBatchProvider.from_env()
    if name == "groq":
        from chunkbatch.services.groq_batch import GroqBatchProvider

        return GroqBatchProvider.from_env()
    raise ValueError(f"Unknown BATCH_PROVIDER '{name}' (expected 'gemini' or 'groq')")

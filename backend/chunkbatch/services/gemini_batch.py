"""Gemini Batch API provider (inline requests)."""

import logging
import os
from collections.abc import Sequence
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from chunkbatch.schemas.batch import BatchConfig
from chunkbatch.services.errors import ProviderRejected, ProviderUnavailable
from chunkbatch.services.provider import (
    ItemStatus,
    ProviderItem,
    ProviderRequest,
    ProviderSnapshot,
    ProviderState,
)

logger = logging.getLogger(__name__)

_STATE_MAP: dict[str, ProviderState] = {
    "JOB_STATE_UNSPECIFIED": "pending",
    "JOB_STATE_PENDING": "pending",
    "JOB_STATE_QUEUED": "pending",
    "JOB_STATE_RUNNING": "running",
    "JOB_STATE_UPDATING": "running",
    "JOB_STATE_PAUSED": "running",
    "JOB_STATE_CANCELLING": "running",
    "JOB_STATE_SUCCEEDED": "succeeded",
    "JOB_STATE_PARTIALLY_SUCCEEDED": "succeeded",
    "JOB_STATE_FAILED": "failed",
    "JOB_STATE_CANCELLED": "cancelled",
    "JOB_STATE_EXPIRED": "expired",
}


class GeminiBatchProvider:
    """Submits chunk prompts as one inline Gemini batch and reads back its responses.

    Gemini answers inline batches by position, so ``fetch`` pairs the n-th
    response with the n-th key.
    """

    name = "gemini"

    def __init__(self, client: genai.Client, model: str) -> None:
        self._client = client
        self._model = model

    @classmethod
    def from_env(cls) -> "GeminiBatchProvider":
        api_key = os.environ.get("GEMINI_API_KEY", "").strip()
        model_name = os.environ.get("GEMINI_BATCH_MODEL", "").strip()
        if not api_key:
            raise ValueError("GEMINI_API_KEY environment variable is not set")
        if not model_name:
            raise ValueError("GEMINI_BATCH_MODEL environment variable is not set")
        return cls(genai.Client(api_key=api_key), model_name)

    def submit(self, job_key: str, requests: Sequence[ProviderRequest], config: BatchConfig) -> str:
        generation: dict[str, Any] = {
            "temperature": config.temperature,
            "max_output_tokens": config.max_tokens_per_chunk,
        }
        if config.top_p is not None:
            generation["top_p"] = config.top_p
        inline_requests: list[dict[str, object]] = [
            {
                "contents": [{"parts": [{"text": r.prompt}], "role": "user"}],
                "config": {**generation, "system_instruction": r.system},
            }
            for r in requests
        ]
        model = config.model or self._model
        logger.info("submitting Gemini batch of %d chunks (model %s)", len(inline_requests), model)
        try:
            batch = self._client.batches.create(
                model=model,
                src=inline_requests,  # type: ignore[arg-type]
                config={"display_name": f"chunkbatch-{job_key}"},
            )
        except genai_errors.ClientError as exc:
            raise ProviderRejected(f"Gemini rejected the batch: {exc}") from exc
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise ProviderUnavailable(f"Gemini batch submission failed: {exc}") from exc
        if not batch.name:
            raise ProviderRejected("Gemini returned a batch without a name")
        logger.info("Gemini batch created: %s", batch.name)
        return batch.name

    def fetch(self, handle: str, keys: Sequence[str]) -> ProviderSnapshot:
        try:
            batch = self._client.batches.get(name=handle)
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise ProviderUnavailable(f"failed to fetch Gemini batch {handle}: {exc}") from exc

        state_name = batch.state.name if batch.state is not None else "JOB_STATE_UNSPECIFIED"
        state = _STATE_MAP.get(state_name, "pending")
        error = str(batch.error.message) if batch.error is not None and batch.error.message else None
        responses = (batch.dest.inlined_responses if batch.dest is not None else None) or []
        items = tuple(
            _to_item(keys[idx], inline_response)
            for idx, inline_response in enumerate(responses)
            if idx < len(keys)
        )
        return ProviderSnapshot(state=state, items=items, error=error)

    def cancel(self, handle: str) -> None:
        try:
            self._client.batches.cancel(name=handle)
        except genai_errors.ClientError as exc:
            raise ProviderRejected(f"Gemini refused to cancel {handle}: {exc}") from exc
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            raise ProviderUnavailable(f"failed to cancel Gemini batch {handle}: {exc}") from exc
        logger.info("Gemini batch %s cancelled", handle)


def _to_item(key: str, inline_response: genai_types.InlinedResponse) -> ProviderItem:
    if inline_response.error:
        return ProviderItem(key=key, status="failed", error=str(inline_response.error))
    response = inline_response.response
    if response is None:
        return ProviderItem(key=key, status="failed", error="empty response")
    usage = response.usage_metadata
    tokens_in = (usage.prompt_token_count or 0) if usage is not None else 0
    tokens_out = (usage.candidates_token_count or 0) if usage is not None else 0
    text = response.text
    status: ItemStatus = "succeeded" if text else "failed"
    return ProviderItem(
        key=key,
        status=status,
        output=text or None,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        error=None if text else "empty response",
    )

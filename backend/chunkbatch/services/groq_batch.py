"""Groq Batch API provider (OpenAI-compatible JSONL batches over httpx)."""

import json
import logging
import os
from collections.abc import Sequence
from typing import Any

import httpx

from chunkbatch.schemas.batch import BatchConfig
from chunkbatch.services.errors import ProviderRejected, ProviderUnavailable
from chunkbatch.services.provider import (
    ProviderItem,
    ProviderRequest,
    ProviderSnapshot,
    ProviderState,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "meta-llama/llama-4-maverick-17b-128e-instruct"
_ENDPOINT = "/v1/chat/completions"
_COMPLETION_WINDOW = "24h"
_TIMEOUT_SECONDS = 60.0

_STATE_MAP: dict[str, ProviderState] = {
    "validating": "pending",
    "in_progress": "running",
    "finalizing": "running",
    "cancelling": "running",
    "completed": "succeeded",
    "failed": "failed",
    "expired": "expired",
    "cancelled": "cancelled",
}


class GroqBatchProvider:
    """Uploads chunk requests as a JSONL file and creates a Groq batch over it."""

    name = "groq"

    def __init__(self, http: httpx.Client, model: str = DEFAULT_MODEL) -> None:
        self._http = http
        self._model = model

    @classmethod
    def from_env(cls) -> "GroqBatchProvider":
        api_key = os.environ.get("GROQ_API_KEY", "").strip()
        if not api_key:
            raise ValueError("GROQ_API_KEY environment variable is not set")
        base_url = os.environ.get("GROQ_BASE_URL", "").strip() or DEFAULT_BASE_URL
        model = os.environ.get("GROQ_BATCH_MODEL", "").strip() or DEFAULT_MODEL
        http = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=_TIMEOUT_SECONDS,
        )
        return cls(http, model)

    def submit(self, job_key: str, requests: Sequence[ProviderRequest], config: BatchConfig) -> str:
        model = config.model or self._model
        lines = [json.dumps(self._request_line(r, model, config)) for r in requests]
        payload = ("\n".join(lines) + "\n").encode("utf-8")

        uploaded = self._call(
            "POST",
            "/files",
            files={"file": (f"chunkbatch-{job_key}.jsonl", payload, "application/jsonl")},
            data={"purpose": "batch"},
        )
        file_id = uploaded.get("id")
        if not file_id:
            raise ProviderRejected("Groq accepted the upload but returned no file id")
        logger.info("uploaded Groq batch file %s (%d requests)", file_id, len(lines))

        batch = self._call(
            "POST",
            "/batches",
            json={
                "input_file_id": file_id,
                "endpoint": _ENDPOINT,
                "completion_window": _COMPLETION_WINDOW,
                "metadata": {"job_id": job_key},
            },
        )
        batch_id = batch.get("id")
        if not batch_id:
            raise ProviderRejected("Groq created a batch without an id")
        logger.info("Groq batch created: %s", batch_id)
        return str(batch_id)

    def fetch(self, handle: str, keys: Sequence[str]) -> ProviderSnapshot:
        try:
            batch = self._call("GET", f"/batches/{handle}")
            state = _STATE_MAP.get(str(batch.get("status")), "pending")
            wanted = set(keys)
            items: dict[str, ProviderItem] = {}
            # Output and error files can both carry results for a finished batch.
            for file_key in ("error_file_id", "output_file_id"):
                file_id = batch.get(file_key)
                if file_id:
                    for item in self._read_results(str(file_id)):
                        if item.key in wanted:
                            items[item.key] = item
        except ProviderRejected as exc:
            raise ProviderUnavailable(str(exc)) from exc

        errors = (batch.get("errors") or {}).get("data") or []
        error = "; ".join(str(e.get("message")) for e in errors if e.get("message")) or None
        ordered = tuple(items[k] for k in keys if k in items)
        return ProviderSnapshot(state=state, items=ordered, error=error)

    def cancel(self, handle: str) -> None:
        self._call("POST", f"/batches/{handle}/cancel")
        logger.info("Groq batch %s cancelled", handle)

    def _request_line(self, request: ProviderRequest, model: str, config: BatchConfig) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": request.system},
                {"role": "user", "content": request.prompt},
            ],
            "temperature": config.temperature,
            "max_tokens": config.max_tokens_per_chunk,
        }
        if config.top_p is not None:
            body["top_p"] = config.top_p
        return {"custom_id": request.key, "method": "POST", "url": _ENDPOINT, "body": body}

    def _read_results(self, file_id: str) -> list[ProviderItem]:
        response = self._send("GET", f"/files/{file_id}/content")
        items: list[ProviderItem] = []
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("skipping malformed result line in Groq file %s", file_id)
                continue
            item = _to_item(record)
            if item is not None:
                items.append(item)
        return items

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._send(method, path, **kwargs)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(
                f"Groq {method} {path} returned a non-JSON body: {response.text[:200]}"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderRejected(f"unexpected Groq response for {method} {path}")
        return data

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Groq request {method} {path} failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(
                f"Groq {method} {path} returned {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise ProviderRejected(
                f"Groq {method} {path} returned {response.status_code}: {response.text[:200]}"
            )
        return response


def _to_item(record: dict[str, Any]) -> ProviderItem | None:
    key = record.get("custom_id")
    if not key:
        return None
    response = record.get("response") or {}
    body = response.get("body") or {}
    error = record.get("error")
    status_code = int(response.get("status_code") or 0)
    if error or status_code >= 400:
        message = error.get("message") if isinstance(error, dict) else error
        if not message and isinstance(body.get("error"), dict):
            message = body["error"].get("message")
        return ProviderItem(key=str(key), status="failed", error=str(message or f"HTTP {status_code}"))

    usage = body.get("usage") or {}
    choices = body.get("choices") or []
    content = ((choices[0].get("message") or {}).get("content") if choices else None) or ""
    if not content.strip():
        return ProviderItem(
            key=str(key),
            status="failed",
            tokens_in=int(usage.get("prompt_tokens") or 0),
            error="empty response",
        )
    return ProviderItem(
        key=str(key),
        status="succeeded",
        output=content,
        tokens_in=int(usage.get("prompt_tokens") or 0),
        tokens_out=int(usage.get("completion_tokens") or 0),
    )

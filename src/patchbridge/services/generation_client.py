from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from ..config import BrokerConfig
from ..domain.models import Chunk, Done, Failure, GenerationRequest, GenerationResult, StreamEvent
from ..errors import BackendError


LOG = logging.getLogger("patchbridge.backend")

TIMING_FIELDS = (
    "total_duration",
    "load_duration",
    "prompt_eval_count",
    "prompt_eval_duration",
    "eval_count",
    "eval_duration",
)


def _build_session() -> requests.Session:
    # No retry adapter: a failed call is reported to the caller as-is.
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _timing(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: record[k] for k in TIMING_FIELDS if record.get(k) is not None}


def _error_body(resp: requests.Response) -> str:
    try:
        body = resp.text
    except (requests.exceptions.RequestException, RuntimeError):  # pragma: no cover - body already consumed
        body = ""
    return body[:500]


class GenerationClient:
    """Client for an Ollama-style ``/api/generate`` endpoint.

    ``complete`` performs one buffered call, ``stream`` yields ``StreamEvent``
    values from a newline-delimited JSON response, and ``events`` exposes
    either mode as an async sequence for the broker. Nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        default_model: str,
        system_prompt: str = "",
        timeout: Tuple[float, float] = (3.0, 120.0),
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.system_prompt = system_prompt
        self._timeout = timeout
        self._session = session or _build_session()
        LOG.info("Generation client ready base_url=%s model=%s", self.base_url, self.default_model)

    @classmethod
    def from_config(cls, cfg: BrokerConfig) -> "GenerationClient":
        return cls(
            base_url=cfg.backend_url,
            default_model=cfg.model,
            system_prompt=cfg.system_prompt,
            timeout=(cfg.backend_connect_timeout, cfg.backend_read_timeout),
        )

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "prompt": request.prompt,
            "system": self.system_prompt,
            "stream": bool(request.stream),
            "options": {},
        }
        if request.temperature is not None:
            payload["options"]["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["options"]["num_predict"] = request.max_tokens
        if request.continuation_token:
            payload["context"] = request.continuation_token
        return payload

    def _log_request(self, payload: Dict[str, Any]) -> None:
        prompt = payload.get("prompt") or ""
        LOG.debug(
            "backend_request",
            extra={
                "model": payload.get("model"),
                "stream": payload.get("stream"),
                "prompt": prompt[:50] + "..." if len(prompt) > 50 else prompt,
            },
        )

    # ------------------------------------------------------------------
    # Buffered
    # ------------------------------------------------------------------
    def complete(self, request: GenerationRequest) -> GenerationResult:
        payload = self.build_payload(request)
        payload["stream"] = False
        self._log_request(payload)
        try:
            resp = self._session.post(f"{self.base_url}/api/generate", json=payload, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            LOG.warning("backend_request_failed", extra={"err": str(exc)})
            raise BackendError(f"Backend request failed: {exc}") from exc
        if not resp.ok:
            raise BackendError(f"Backend returned {resp.status_code}: {_error_body(resp)}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise BackendError(f"Backend returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise BackendError("Backend returned an unexpected body")
        if data.get("error"):
            raise BackendError(f"Backend error: {data['error']}")
        text = data.get("response") or ""
        if not isinstance(text, str):
            raise BackendError("Backend returned an unexpected body")
        LOG.debug("backend_response", extra={"model": data.get("model"), "chars": len(text)})
        return GenerationResult(
            text=text,
            model=data.get("model") or payload["model"],
            continuation_token=data.get("context"),
            timing=_timing(data),
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def stream(self, request: GenerationRequest) -> Iterator[StreamEvent]:
        payload = self.build_payload(request)
        payload["stream"] = True
        self._log_request(payload)
        parts = []
        try:
            with self._session.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=self._timeout,
                stream=True,
            ) as resp:
                if not resp.ok:
                    yield Failure(f"Backend returned {resp.status_code}: {_error_body(resp)}", status_code=resp.status_code)
                    return
                for raw_line in resp.iter_lines():
                    if not raw_line:
                        continue
                    try:
                        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                        record = json.loads(line)
                    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                        LOG.error("backend_stream_parse_failed", extra={"err": str(exc)})
                        yield Failure(f"Malformed stream record: {exc}")
                        return
                    if not isinstance(record, dict):
                        yield Failure("Malformed stream record: expected an object")
                        return
                    if record.get("error"):
                        yield Failure(f"Backend error: {record['error']}")
                        return
                    token = record.get("response") or ""
                    if not isinstance(token, str):
                        yield Failure("Malformed stream record: response is not a string")
                        return
                    if token:
                        parts.append(token)
                        yield Chunk(token)
                    if record.get("done"):
                        yield Done(
                            final_text="".join(parts),
                            model=record.get("model") or payload["model"],
                            continuation_token=record.get("context"),
                            timing=_timing(record),
                        )
                        return
        except requests.exceptions.RequestException as exc:
            LOG.warning("backend_stream_failed", extra={"err": str(exc)})
            yield Failure(f"Backend request failed: {exc}")
            return
        yield Failure("Backend stream ended before completion")

    # ------------------------------------------------------------------
    # Async surface used by the broker
    # ------------------------------------------------------------------
    async def events(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        if request.stream:
            iterator = self.stream(request)
            try:
                async for event in iterate_in_threadpool(iterator):
                    yield event
            finally:
                await run_in_threadpool(iterator.close)
            return
        try:
            result = await run_in_threadpool(self.complete, request)
        except BackendError as exc:
            yield Failure(str(exc), status_code=exc.status_code)
            return
        yield Done(
            final_text=result.text,
            model=result.model,
            continuation_token=result.continuation_token,
            timing=result.timing,
        )

    def health(self) -> bool:
        try:
            resp = self._session.get(f"{self.base_url}/api/tags", timeout=self._timeout[0])
        except requests.exceptions.RequestException:
            return False
        return resp.ok

"""HTTP LLM providers with categorized retry, rate-limit waits and streaming."""

import re
import json
import math
import time
import base64
import logging
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import requests

from awbatch.config import ProviderCfg
from awbatch.metrics import MetricsCollector, RequestMetric
from .errors import LLMError
from .stream import consume_with_idle_timeout, dig, iter_sse_data

LOG = logging.getLogger("aw-batch-worker")

BACKOFF_BASE_MS = 1000
JSON_MODE_HINTS = ("json", "response_format", "response_mime_type")

_RETRY_DELAY_RE = re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?)s"')
_PLEASE_RETRY_RE = re.compile(r"Please retry in\s+(\d+(?:\.\d+)?)s", re.IGNORECASE)
_SECONDS_RE = re.compile(r"(\d+(?:\.\d+)?)s")


@dataclass
class LLMRequest:
    prompt: str
    images: List[Tuple[str, str]] = field(default_factory=list)  # (path, mime)
    chunk_index: Optional[int] = None
    chunk_total: Optional[int] = None


@dataclass(frozen=True)
class HttpOutcome:
    status: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)


class Decision(str, Enum):
    OK = "ok"
    RETRY = "retry"
    RATE_LIMITED = "rate_limited"
    TERMINAL = "terminal"
    JSON_MODE_UNSUPPORTED = "json_mode_unsupported"


def classify_outcome(outcome: HttpOutcome, json_mode: bool) -> Decision:
    """Decide what the retry loop does with one HTTP response."""
    status = outcome.status
    if 200 <= status < 300:
        return Decision.OK
    if status == 429:
        return Decision.RATE_LIMITED
    if json_mode and status == 400:
        body = (outcome.body or "").lower()
        if any(h in body for h in JSON_MODE_HINTS):
            return Decision.JSON_MODE_UNSUPPORTED
    if 400 <= status < 500:
        return Decision.TERMINAL
    return Decision.RETRY


def _secs_to_ms(value: str) -> Optional[int]:
    try:
        secs = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(secs) or secs < 0:
        return None
    return int(math.ceil(secs * 1000))


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name) if headers else None
    if value is None and headers:
        for k, v in headers.items():
            if k.lower() == name.lower():
                return v
    return value


def retry_after_ms(outcome: HttpOutcome) -> Optional[int]:
    """Server-requested wait for a 429, in ms, or None if it gave none.

    Looked up in order: ``Retry-After`` header (seconds), a ``retryDelay``
    entry in the JSON error details, a ``"retryDelay": "Ns"`` fragment
    anywhere in the body, and a ``Please retry in Ns`` message.
    """
    header = _header(outcome.headers, "Retry-After")
    if header is not None:
        ms = _secs_to_ms(header.strip())
        if ms is not None:
            return ms

    body = outcome.body or ""
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    details = dig(parsed, "error", "details")
    if isinstance(details, list):
        for d in details:
            delay = d.get("retryDelay") if isinstance(d, dict) else None
            if isinstance(delay, str):
                m = _SECONDS_RE.search(delay)
                if m:
                    return _secs_to_ms(m.group(1))

    for rx in (_RETRY_DELAY_RE, _PLEASE_RETRY_RE):
        m = rx.search(body)
        if m:
            return _secs_to_ms(m.group(1))
    return None


def guess_mime(path: str) -> str:
    mime, _ = mimetypes.guess_type(path)
    return mime or "image/png"


def load_images(images: List[Tuple[str, str]], log_prefix: str = "LLM") -> List[Tuple[str, str]]:
    """Read images as base64; returns (mime, data) pairs, skipping unreadable files."""
    out = []
    for path, mime in images:
        try:
            with open(path, "rb") as f:
                data = base64.b64encode(f.read()).decode("ascii")
        except OSError as e:
            LOG.error("[%s] Failed to read image %s: %r", log_prefix, path, e)
            continue
        out.append((mime or guess_mime(path), data))
    return out


class BaseProvider:
    """Shared request loop; subclasses describe the wire format."""

    display_name = "LLM"

    def __init__(
        self,
        cfg: ProviderCfg,
        api_key: str,
        metrics: MetricsCollector,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.api_key = api_key
        self.metrics = metrics
        self.session = session or requests.Session()
        self.sleep = sleep
        self.base_url = (cfg.api_base_url or "").rstrip("/")
        self.model = cfg.model
        self.name = cfg.name or cfg.kind
        self.timeout_s = cfg.timeout_ms / 1000.0
        self.max_attempts = cfg.max_attempts
        self.streaming = cfg.streaming

    @property
    def label(self) -> str:
        return f"{self.name}:{self.model}"

    # --- wire format hooks ---------------------------------------------------

    def _url(self, stream: bool) -> str:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _payload(self, prompt: str, images: List[Tuple[str, str]], json_mode: bool, stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def _text(self, data: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def _usage(self, data: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
        return None, None

    def _fragment(self, event: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    # --- transport -----------------------------------------------------------

    def _post(self, url: str, payload: Dict[str, Any], stream: bool = False) -> requests.Response:
        try:
            return self.session.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_s,
                stream=stream,
            )
        except requests.Timeout as e:
            raise LLMError(f"Request timeout after {self.timeout_s:.1f}s: {e}") from e
        except requests.RequestException as e:
            raise LLMError(f"Network error: {e}") from e

    def _request_json(self, request: LLMRequest) -> Tuple[str, Tuple[Optional[int], Optional[int]]]:
        """Run the retry loop; returns (text, (prompt_tokens, completion_tokens))."""
        images = load_images(request.images, self.display_name)
        url = self._url(stream=False)
        json_mode = True
        last_error: Optional[LLMError] = None
        attempt = 0

        while attempt < self.max_attempts:
            attempt += 1
            wait_ms = BACKOFF_BASE_MS * attempt
            try:
                resp = self._post(url, self._payload(request.prompt, images, json_mode, False))
            except LLMError as e:
                last_error = e
            else:
                outcome = HttpOutcome(resp.status_code, resp.text, resp.headers)
                decision = classify_outcome(outcome, json_mode)

                if decision is Decision.OK:
                    try:
                        data = resp.json()
                    except ValueError:
                        data = None
                    text = self._text(data) if isinstance(data, dict) else None
                    if text is not None:
                        return text, self._usage(data)
                    last_error = LLMError(f"Unexpected {self.display_name} response format")
                elif decision is Decision.JSON_MODE_UNSUPPORTED:
                    LOG.warning("[%s] JSON mode not supported, retrying without it", self.display_name)
                    json_mode = False
                    attempt -= 1
                    continue
                elif decision is Decision.TERMINAL:
                    raise LLMError(
                        f"{self.display_name} API Error {outcome.status}: {outcome.body}",
                        status=outcome.status,
                        body=outcome.body,
                    )
                elif decision is Decision.RATE_LIMITED:
                    delay = retry_after_ms(outcome)
                    if delay is not None:
                        wait_ms = delay
                    last_error = LLMError(
                        f"Rate limited (429): {outcome.body}", status=429, body=outcome.body
                    )
                else:
                    last_error = LLMError(
                        f"Server Error {outcome.status}: {outcome.body}",
                        status=outcome.status,
                        body=outcome.body,
                    )

            if attempt < self.max_attempts:
                LOG.warning(
                    "[%s] Attempt %d failed: %s. Retrying in %dms...",
                    self.display_name,
                    attempt,
                    last_error,
                    wait_ms,
                )
                self.sleep(wait_ms / 1000.0)

        raise last_error

    def _record(self, request: LLMRequest, started: float, started_mono: float, error=None, usage=(None, None)):
        self.metrics.record_request(
            RequestMetric(
                timestamp=started,
                duration_ms=(time.monotonic() - started_mono) * 1000,
                provider=self.name,
                model=self.model,
                success=error is None,
                error_category=self.metrics.categorize_error(error) if error is not None else None,
                prompt_tokens=usage[0],
                completion_tokens=usage[1],
                chunk_index=request.chunk_index,
                chunk_total=request.chunk_total,
            )
        )

    # --- public API ----------------------------------------------------------

    def generate_content(self, request: LLMRequest) -> str:
        """One logical call with retries; the outcome is recorded as a metric."""
        started, started_mono = time.time(), time.monotonic()
        try:
            text, usage = self._request_json(request)
        except LLMError as e:
            self._record(request, started, started_mono, error=e)
            raise
        self._record(request, started, started_mono, usage=usage)
        return text

    def _open_stream(self, request: LLMRequest) -> requests.Response:
        """POST the streaming request; the connect/header wait is bounded by ``timeout_ms``."""
        images = load_images(request.images, self.display_name)
        resp = self._post(
            self._url(stream=True),
            self._payload(request.prompt, images, False, True),
            stream=True,
        )
        if not 200 <= resp.status_code < 300:
            body = resp.text
            resp.close()
            raise LLMError(
                f"{self.display_name} API Error {resp.status_code}: {body}",
                status=resp.status_code,
                body=body,
            )
        return resp

    def _iter_stream(self, resp: requests.Response, state: Dict[str, Any]) -> Iterator[str]:
        try:
            for event in iter_sse_data(resp.iter_lines(decode_unicode=True)):
                prompt_tokens, completion_tokens = self._usage(event)
                if completion_tokens is not None:
                    state["usage"] = (prompt_tokens, completion_tokens)
                text = self._fragment(event)
                if text:
                    yield text
        except requests.RequestException as e:
            raise LLMError(f"Network error while streaming: {e}") from e
        finally:
            resp.close()

    def generate_content_stream(self, request: LLMRequest) -> Iterator[str]:
        """Yield text fragments as they arrive. Single attempt, no metrics.

        The request is sent before this returns, so HTTP errors raise here.
        """
        return self._iter_stream(self._open_stream(request), {})

    def stream_content(self, request: LLMRequest, idle_timeout_s: Optional[float] = None) -> str:
        """Stream a response under the idle-timeout guard and record the outcome.

        The idle timer only starts once the response headers are in; until
        then the request timeout applies.
        """
        if idle_timeout_s is None:
            idle_timeout_s = self.cfg.stream_idle_timeout_ms / 1000.0
        state: Dict[str, Any] = {}

        def abort():
            resp = state.get("response")
            if resp is not None:
                resp.close()

        started, started_mono = time.time(), time.monotonic()
        try:
            state["response"] = self._open_stream(request)
            text = consume_with_idle_timeout(
                self._iter_stream(state["response"], state), idle_timeout_s, on_timeout=abort
            )
        except Exception as e:
            self._record(request, started, started_mono, error=e)
            raise
        self._record(request, started, started_mono, usage=state.get("usage", (None, None)))
        return text


class OpenAIProvider(BaseProvider):
    """OpenAI-compatible ``/chat/completions`` endpoint."""

    display_name = "OpenAI"

    def __init__(self, cfg: ProviderCfg, *args, **kwargs):
        super().__init__(cfg, *args, **kwargs)
        if self.name.lower() != "openai":
            self.display_name = self.name

    def _url(self, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _payload(self, prompt, images, json_mode, stream):
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for mime, data in images:
            content.append(
                {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{data}"}}
            )
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "temperature": self.cfg.temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
        return payload

    def _text(self, data):
        return dig(data, "choices", 0, "message", "content")

    def _usage(self, data):
        usage = data.get("usage") or {}
        return usage.get("prompt_tokens"), usage.get("completion_tokens")

    def _fragment(self, event):
        return dig(event, "choices", 0, "delta", "content")


class GeminiProvider(BaseProvider):
    """Google Gemini native ``generateContent`` API."""

    display_name = "Gemini"

    def _url(self, stream: bool) -> str:
        if stream:
            return f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def _payload(self, prompt, images, json_mode, stream):
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for mime, data in images:
            parts.append({"inline_data": {"mime_type": mime, "data": data}})
        generation: Dict[str, Any] = {"temperature": self.cfg.temperature}
        if json_mode:
            generation["response_mime_type"] = "application/json"
        return {"contents": [{"parts": parts}], "generationConfig": generation}

    def _text(self, data):
        return dig(data, "candidates", 0, "content", "parts", 0, "text")

    def _usage(self, data):
        meta = data.get("usageMetadata") or {}
        return meta.get("promptTokenCount"), meta.get("candidatesTokenCount")

    def _fragment(self, event):
        return dig(event, "candidates", 0, "content", "parts", 0, "text")

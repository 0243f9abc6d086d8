"""
Model backends: the single boundary to concrete generative-model services.

A backend receives the prompt context (the input value rendered as plain
JSON-compatible Python data) and the prompt template, and returns the model's
textual response or raises ModelError with kind TRANSIENT or PERMANENT.
Retries, timeouts and coercion are the dispatcher's job, never the backend's.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from error_handling import ModelError


class ModelBackend(ABC):
    """invoke(promptContext, template) -> str, or raise ModelError"""

    @abstractmethod
    def invoke(self, context: Any, template: str) -> str:
        raise NotImplementedError

    def close(self) -> None:
        """Release any pooled resources"""


class EchoBackend(ModelBackend):
    """Answers every call with a JSON echo of what it was sent; for dry runs"""

    def invoke(self, context: Any, template: str) -> str:
        return json.dumps({"template": template, "input": context}, ensure_ascii=False)


ScriptedResponse = Union[str, BaseException, Callable[[Any, str], str]]


class ScriptedBackend(ModelBackend):
    """Replays queued responses in order.

    Each queued item is a response string, an exception to raise, or a
    callable (context, template) -> str. When the queue is empty the
    responder callable, if any, answers instead. Every call is recorded.
    """

    def __init__(self, responses: Optional[Sequence[ScriptedResponse]] = None,
                 responder: Optional[Callable[[Any, str], str]] = None):
        self._queue: List[ScriptedResponse] = list(responses or [])
        self._responder = responder
        self._lock = threading.Lock()
        self.calls: List[Tuple[Any, str]] = []

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def invoke(self, context: Any, template: str) -> str:
        with self._lock:
            self.calls.append((context, template))
            item = self._queue.pop(0) if self._queue else self._responder
        if item is None:
            raise ModelError("scripted backend has no response left", ModelError.PERMANENT, "rejected")
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(context, template)
        return item

    @classmethod
    def from_file(cls, path: str) -> 'ScriptedBackend':
        """Load a JSON array of response strings"""
        with open(path, 'r', encoding='utf-8') as f:
            responses = json.load(f)
        if not isinstance(responses, list) or not all(isinstance(r, str) for r in responses):
            raise ValueError(f"{path} must contain a JSON array of strings")
        return cls(responses)


class HTTPBackend(ModelBackend):
    """POSTs {"template", "input"} as JSON to a model gateway.

    The gateway answers {"output": "..."} or plain text. 429, 5xx and
    transport faults are transient; other non-2xx statuses are rejections.
    """

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 120.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self._client = httpx.Client(headers=dict(headers or {}), timeout=timeout,
                                    transport=transport, follow_redirects=True)

    def invoke(self, context: Any, template: str) -> str:
        try:
            resp = self._client.post(self.url, json={"template": template, "input": context})
        except httpx.TimeoutException as e:
            raise ModelError(f"gateway timed out: {e}", ModelError.TRANSIENT, "timeout") from e
        except httpx.TransportError as e:
            raise ModelError(f"gateway unreachable: {e}", ModelError.TRANSIENT, "network") from e

        preview = (resp.text or "")[:200]
        if resp.status_code == 429:
            raise ModelError(f"rate limited: {preview}", ModelError.TRANSIENT, "rate_limit")
        if resp.status_code >= 500:
            raise ModelError(f"HTTP {resp.status_code}: {preview}", ModelError.TRANSIENT, "server_error")
        if not 200 <= resp.status_code < 300:
            raise ModelError(f"HTTP {resp.status_code}: {preview}", ModelError.PERMANENT, "rejected")

        content_type = resp.headers.get("Content-Type", "")
        if "json" not in content_type:
            return resp.text
        body = resp.json()
        output = body.get("output") if isinstance(body, dict) else None
        if not isinstance(output, str):
            raise ModelError("gateway JSON response lacks a string 'output' field",
                             ModelError.PERMANENT, "backend_failure")
        return output

    def close(self) -> None:
        self._client.close()


def create_backend(name: str, responses: Optional[str] = None, url: Optional[str] = None) -> ModelBackend:
    """Build a backend from command-line style settings"""
    if name == "echo":
        return EchoBackend()
    if name == "scripted":
        if not responses:
            raise ValueError("the scripted backend needs a responses file")
        return ScriptedBackend.from_file(responses)
    if name == "http":
        if not url:
            raise ValueError("the http backend needs a gateway URL")
        return HTTPBackend(url)
    raise ValueError(f"unknown backend: {name}")

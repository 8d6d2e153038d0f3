"""Transport seam: one blocking request, or one opened stream of lines.

Drivers only speak to the ``Transport`` protocol. ``HttpxTransport`` is the
default implementation; tests and embedders can pass anything with the same
two methods.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from castor._http import DEFAULT_TIMEOUT_S, USER_AGENT

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatRequest:
    """A provider-native HTTP request built by a dialect."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    json: Any = None
    params: Mapping[str, str] | None = None
    timeout_s: float | None = None


@runtime_checkable
class StreamHandle(Protocol):
    """An opened stream: iterate text lines, then close."""

    def __iter__(self) -> Iterator[str]: ...

    def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """What a driver needs from the network."""

    def request(self, request: ChatRequest) -> Any:
        """Perform one blocking call and return the decoded JSON body."""
        ...

    def stream(self, request: ChatRequest) -> StreamHandle:
        """Open a streamed call; errors before the first byte raise here."""
        ...

    def close(self) -> None:
        """Release pooled connections."""
        ...


class _HttpxStream:
    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    def __iter__(self) -> Iterator[str]:
        return self._response.iter_lines()

    def close(self) -> None:
        self._response.close()


class HttpxTransport:
    """``Transport`` backed by a synchronous ``httpx.Client``."""

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_s),
            headers={"User-Agent": USER_AGENT},
        )

    def _kwargs(self, request: ChatRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": dict(request.headers)}
        if request.json is not None:
            kwargs["json"] = request.json
        if request.params:
            kwargs["params"] = dict(request.params)
        if request.timeout_s is not None:
            kwargs["timeout"] = httpx.Timeout(request.timeout_s)
        return kwargs

    def request(self, request: ChatRequest) -> Any:
        response = self._client.request(
            request.method, request.url, **self._kwargs(request)
        )
        log.debug("%s %s -> %d", request.method, request.url, response.status_code)
        response.raise_for_status()
        return response.json()

    def stream(self, request: ChatRequest) -> StreamHandle:
        http_request = self._client.build_request(
            request.method, request.url, **self._kwargs(request)
        )
        response = self._client.send(http_request, stream=True)
        log.debug("%s %s -> %d (stream)", request.method, request.url, response.status_code)
        if response.is_error:
            # Read the body so the classifier can see the provider's message.
            try:
                response.read()
            finally:
                response.close()
            response.raise_for_status()
        return _HttpxStream(response)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

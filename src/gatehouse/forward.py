"""
Upstream forwarding for Gatehouse.

Once a request is allowed and its decision recorded, the pipeline hands it
to a forwarder that relays it to the real tool or service.

Security Note:
    The forwarder only ever sees requests the decision engine allowed.
    It still enforces its own limits:
    - Response size limits: Stop reading if the response exceeds the limit
    - Hop-by-hop and credential headers are never relayed upstream
    - Every upstream request carries the decision's trace id
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from gatehouse.errors import ForwardError
from gatehouse.schema import Decision

if TYPE_CHECKING:
    from gatehouse.pipeline import GovernedRequest

TRACE_HEADER = "X-Gatehouse-Trace-Id"

# Never relayed upstream
STRIPPED_HEADERS = frozenset({
    "authorization",
    "connection",
    "content-length",
    "host",
    "keep-alive",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

DEFAULT_MAX_RESPONSE_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class ForwardResult:
    """
    What the upstream answered.

    Attributes:
        status_code: Upstream HTTP status
        headers: Upstream response headers
        body: Raw response body
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


class Forwarder(Protocol):
    """Relays an allowed request."""

    async def forward(self, request: "GovernedRequest", decision: Decision) -> ForwardResult: ...


def upstream_headers(headers: dict[str, str], decision: Decision) -> dict[str, str]:
    """Filter inbound headers and stamp the trace id."""
    relayed = {k: v for k, v in headers.items() if k.lower() not in STRIPPED_HEADERS}
    relayed[TRACE_HEADER] = decision.trace_id
    return relayed


class HttpForwarder:
    """
    Relays allowed requests over HTTP with httpx.

    Usage:
        async with httpx.AsyncClient() as client:
            forwarder = HttpForwarder("https://tools.internal", client)
            result = await forwarder.forward(request, decision)
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient()
        self.max_response_bytes = max_response_bytes

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def forward(self, request: "GovernedRequest", decision: Decision) -> ForwardResult:
        """
        Send the request upstream and read the response.

        Raises:
            ForwardError: On transport failure or an oversized response
        """
        url = self.url_for(request.path)
        kwargs: dict[str, Any] = {"headers": upstream_headers(request.headers, decision)}
        if request.body is not None:
            kwargs["content"] = request.body

        try:
            async with self.client.stream(request.method, url, **kwargs) as response:
                chunks: list[bytes] = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > self.max_response_bytes:
                        raise ForwardError(
                            target=url,
                            underlying_error=(
                                f"response exceeded {self.max_response_bytes} bytes"
                            ),
                        )
                    chunks.append(chunk)
                return ForwardResult(
                    status_code=response.status_code,
                    headers=dict(response.headers),
                    body=b"".join(chunks),
                )
        except httpx.TimeoutException as e:
            raise ForwardError(target=url, underlying_error="upstream timed out") from e
        except httpx.HTTPError as e:
            raise ForwardError(
                target=url,
                underlying_error=f"{type(e).__name__}: {e}",
            ) from e

    async def aclose(self) -> None:
        await self.client.aclose()

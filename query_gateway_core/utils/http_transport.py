"""
Outbound HTTP transport and caller deadlines.

``HttpTransport`` is the only place the gateway touches ``requests``.
Token and protocol calls go through it so tests can swap in a fake
transport with the same ``send`` signature.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol

import requests

from ..exceptions import ErrorCode, ExternalServiceError, GatewayTimeoutError
from ..schemas.query_schemas import OutboundRequest
from .logger import get_logger


@dataclass(frozen=True)
class TransportResponse:
    """Status, headers and decoded body of one HTTP exchange."""

    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


class Transport(Protocol):
    def send(self, request: OutboundRequest, timeout: float, stage: str) -> TransportResponse:
        ...


class Deadline:
    """
    A point in time by which a gateway call must finish.

    ``timeout_for`` clamps per-request timeouts to the time left and raises
    GatewayTimeoutError once nothing is left.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    @classmethod
    def optional(
        cls, seconds: Optional[float], clock: Callable[[], float] = time.monotonic
    ) -> Optional["Deadline"]:
        return cls(seconds, clock) if seconds is not None else None

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def timeout_for(self, default_seconds: float, stage: str) -> float:
        remaining = self.remaining()
        if remaining <= 0:
            raise GatewayTimeoutError(f"Deadline exceeded before {stage} call", stage=stage)
        return min(default_seconds, remaining)


def effective_timeout(deadline: Optional[Deadline], default_seconds: float, stage: str) -> float:
    """Per-request timeout honoring an optional deadline."""
    if deadline is None:
        return default_seconds
    return deadline.timeout_for(default_seconds, stage)


class HttpTransport:
    """``requests``-backed transport with a shared connection pool."""

    def __init__(self, session: Optional[requests.Session] = None, verify: bool = True):
        self.session = session or requests.Session()
        self.verify = verify
        self.logger = get_logger()

    def send(self, request: OutboundRequest, timeout: float, stage: str) -> TransportResponse:
        """
        Perform ``request``.

        Raises:
            GatewayTimeoutError: If connecting or reading exceeds ``timeout``
            ExternalServiceError: For any other transport-level failure
        """
        self.logger.debug(
            f"{stage} request",
            extra={"method": request.method, "url": request.url, "timeout": round(timeout, 3)},
        )
        try:
            response = self.session.request(
                request.method,
                request.full_url,
                headers=request.headers,
                data=request.body.encode("utf-8") if request.body is not None else None,
                timeout=timeout,
                verify=self.verify,
            )
        except requests.Timeout as e:
            raise GatewayTimeoutError(
                f"{stage} request timed out after {timeout:.1f}s", stage=stage, cause=e
            ) from e
        except requests.RequestException as e:
            raise ExternalServiceError(
                f"{stage} request failed: {e}",
                service_name=stage,
                error_code=ErrorCode.CONNECTION_ERROR,
                cause=e,
            ) from e

        return TransportResponse(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
            url=response.url,
        )

    def close(self) -> None:
        self.session.close()

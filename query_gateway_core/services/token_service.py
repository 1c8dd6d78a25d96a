"""
OAuth2 bearer token acquisition, caching and refresh per tenant.

Per tenant the lifecycle is ``NO_TOKEN -> VALID -> (near expiry) ->
REFRESHING -> VALID | NO_TOKEN``. Acquisition for one tenant is
single-flight: concurrent callers queue on a per-tenant lock and the
ones that wake up after a successful fetch reuse the cached token.
Different tenants never wait on each other.
"""

import base64
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Set
from urllib.parse import urlencode

from ..config import AppConfig, get_config
from ..enums import GrantType, TokenState
from ..exceptions import AuthenticationError, ExternalServiceError, GatewayTimeoutError
from ..schemas.credential_schemas import TenantCredential
from ..schemas.query_schemas import CachedToken, OutboundRequest
from ..utils.http_transport import Deadline, HttpTransport, Transport, effective_timeout
from ..utils.json_utils import loads
from ..utils.logger import get_logger

DEFAULT_EXPIRES_IN_SECONDS = 3600
_BODY_PREVIEW_CHARS = 500


def epoch_ms() -> int:
    return int(time.time() * 1000)


def token_preview(token: str) -> str:
    """First characters of a token, for logs."""
    return f"{token[:8]}..." if token else ""


class CredentialStore(Protocol):
    def get_credential(self, tenant_name: str) -> TenantCredential:
        ...


class TokenCache(Protocol):
    def get(self, tenant: str) -> Optional[CachedToken]:
        ...

    def set(self, tenant: str, token: CachedToken) -> None:
        ...

    def invalidate(self, tenant: str) -> None:
        ...


class InMemoryTokenCache:
    """Process-local token cache with one slot per tenant."""

    def __init__(self):
        self._tokens: Dict[str, CachedToken] = {}
        self._lock = threading.Lock()

    def get(self, tenant: str) -> Optional[CachedToken]:
        with self._lock:
            return self._tokens.get(tenant)

    def set(self, tenant: str, token: CachedToken) -> None:
        with self._lock:
            self._tokens[tenant] = token

    def invalidate(self, tenant: str) -> None:
        with self._lock:
            self._tokens.pop(tenant, None)

    def tenants(self) -> Set[str]:
        with self._lock:
            return set(self._tokens)


class OAuth2Client:
    """Performs password and refresh-token grants against a tenant's token endpoint."""

    def __init__(
        self,
        transport: Transport,
        clock: Callable[[], int] = epoch_ms,
        timeout_seconds: float = 30,
    ):
        self.transport = transport
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger()

    def password_grant(
        self, credential: TenantCredential, deadline: Optional[Deadline] = None
    ) -> CachedToken:
        """Full credential grant using the tenant's service-account key pair."""
        basic = base64.b64encode(
            f"{credential.client_id}:{credential.client_secret}".encode("utf-8")
        ).decode("ascii")
        form = {
            "grant_type": GrantType.PASSWORD.value,
            "username": credential.service_account_access_key,
            "password": credential.service_account_secret_key,
        }
        if credential.scope:
            form["scope"] = credential.scope

        payload = self._request_token(
            credential, form, {"Authorization": f"Basic {basic}"}, GrantType.PASSWORD, deadline
        )
        return self._to_cached_token(credential, payload, GrantType.PASSWORD)

    def refresh_grant(
        self,
        credential: TenantCredential,
        previous: CachedToken,
        deadline: Optional[Deadline] = None,
    ) -> CachedToken:
        """Exchange ``previous.refresh_token`` for a new access token."""
        form = {
            "grant_type": GrantType.REFRESH_TOKEN.value,
            "client_id": credential.client_id,
            "client_secret": credential.client_secret,
            "refresh_token": previous.refresh_token or "",
        }
        payload = self._request_token(credential, form, {}, GrantType.REFRESH_TOKEN, deadline)
        return self._to_cached_token(credential, payload, GrantType.REFRESH_TOKEN, previous)

    def _request_token(
        self,
        credential: TenantCredential,
        form: Dict[str, str],
        headers: Dict[str, str],
        grant_type: GrantType,
        deadline: Optional[Deadline],
    ) -> Dict:
        request = OutboundRequest(
            method="POST",
            url=credential.token_url,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
                **headers,
            },
            body=urlencode(form),
        )
        timeout = effective_timeout(deadline, self.timeout_seconds, "token")

        try:
            response = self.transport.send(request, timeout=timeout, stage="token")
        except ExternalServiceError as e:
            raise AuthenticationError(
                f"Token endpoint unreachable for tenant '{credential.tenant_name}'",
                grant_type=grant_type.value,
                tenant_name=credential.tenant_name,
                cause=e,
            ) from e

        if not response.ok:
            raise AuthenticationError(
                f"Token endpoint rejected {grant_type.value} grant with HTTP {response.status_code}",
                upstream_status=response.status_code,
                upstream_body=response.text[:_BODY_PREVIEW_CHARS],
                grant_type=grant_type.value,
                tenant_name=credential.tenant_name,
            )

        try:
            payload = loads(response.text)
        except ValueError as e:
            raise AuthenticationError(
                "Token endpoint returned a non-JSON body",
                upstream_status=response.status_code,
                upstream_body=response.text[:_BODY_PREVIEW_CHARS],
                grant_type=grant_type.value,
                cause=e,
            ) from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthenticationError(
                "Token response has no access_token",
                upstream_status=response.status_code,
                grant_type=grant_type.value,
                tenant_name=credential.tenant_name,
            )
        return payload

    def _to_cached_token(
        self,
        credential: TenantCredential,
        payload: Dict,
        grant_type: GrantType,
        previous: Optional[CachedToken] = None,
    ) -> CachedToken:
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS

        return CachedToken(
            tenant_id=credential.tenant_name,
            access_token=payload["access_token"],
            token_type=payload.get("token_type") or "Bearer",
            expires_at_epoch_ms=self.clock() + expires_in * 1000,
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            scope=payload.get("scope") or (previous.scope if previous else credential.scope),
            grant_type=grant_type,
        )


class TokenManager:
    """
    Issues valid bearer tokens per tenant.

    The cache, clock and transport are injected so the manager has an
    explicit lifetime and can be exercised without a network.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        cache: Optional[TokenCache] = None,
        transport: Optional[Transport] = None,
        clock: Callable[[], int] = epoch_ms,
        config: Optional[AppConfig] = None,
        safety_margin_seconds: Optional[int] = None,
    ):
        config = config or get_config()
        self.credential_store = credential_store
        self.cache = cache if cache is not None else InMemoryTokenCache()
        self.clock = clock
        margin = (
            safety_margin_seconds
            if safety_margin_seconds is not None
            else config.token.safety_margin_seconds
        )
        self.safety_margin_ms = margin * 1000
        self.client = OAuth2Client(
            transport or HttpTransport(),
            clock=clock,
            timeout_seconds=config.token.request_timeout_seconds,
        )
        self.logger = get_logger()

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._in_flight: Set[str] = set()

    def _lock_for(self, tenant: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(tenant)
            if lock is None:
                lock = self._locks[tenant] = threading.Lock()
            return lock

    def _usable(self, token: Optional[CachedToken]) -> bool:
        return token is not None and not token.is_expiring(self.clock(), self.safety_margin_ms)

    def has_valid_token(self, tenant: str) -> bool:
        return self._usable(self.cache.get(tenant))

    def token_state(self, tenant: str) -> TokenState:
        if tenant in self._in_flight:
            return TokenState.REFRESHING
        if self.has_valid_token(tenant):
            return TokenState.VALID
        return TokenState.NO_TOKEN

    def invalidate(self, tenant: str) -> None:
        self.cache.invalidate(tenant)
        self.logger.info("Token invalidated", extra={"tenant_id": tenant})

    def get_valid_token(
        self,
        tenant: str,
        deadline: Optional[Deadline] = None,
        force_full_grant: bool = False,
        credential: Optional[TenantCredential] = None,
    ) -> CachedToken:
        """
        Return a token that is valid beyond the safety margin.

        A cached token is reused when usable. Otherwise a refresh grant is
        tried when a refresh token exists (skipped with ``force_full_grant``),
        falling back to a full password grant.

        Raises:
            CredentialNotFoundError: Unknown tenant
            DecryptionError: Stored secrets cannot be decrypted
            AuthenticationError: The token endpoint rejected every grant
            GatewayTimeoutError: ``deadline`` ran out; the cache is left untouched
        """
        cached = self.cache.get(tenant)
        if self._usable(cached):
            return cached

        lock = self._lock_for(tenant)
        if deadline is None:
            lock.acquire()
        elif not lock.acquire(timeout=max(deadline.remaining(), 0.0)):
            raise GatewayTimeoutError(
                "Timed out waiting for in-flight token acquisition", stage="token", tenant_id=tenant
            )

        try:
            # Another caller may have finished while we waited
            cached = self.cache.get(tenant)
            if self._usable(cached):
                return cached

            self._in_flight.add(tenant)
            credential = credential or self.credential_store.get_credential(tenant)
            return self._acquire(tenant, credential, cached, deadline, force_full_grant)
        finally:
            self._in_flight.discard(tenant)
            lock.release()

    def _acquire(
        self,
        tenant: str,
        credential: TenantCredential,
        cached: Optional[CachedToken],
        deadline: Optional[Deadline],
        force_full_grant: bool,
    ) -> CachedToken:
        if cached is not None and cached.refresh_token and not force_full_grant:
            try:
                token = self.client.refresh_grant(credential, cached, deadline)
            except AuthenticationError as e:
                self.logger.warning(
                    "Refresh grant failed, falling back to full grant",
                    extra={"tenant_id": tenant, "upstream_status": e.upstream_status},
                )
            else:
                self.cache.set(tenant, token)
                self.logger.info(
                    "Token refreshed",
                    extra={
                        "tenant_id": tenant,
                        "token": token_preview(token.access_token),
                        "expires_at": token.expires_at.isoformat(),
                    },
                )
                return token

        try:
            token = self.client.password_grant(credential, deadline)
        except AuthenticationError:
            self.cache.invalidate(tenant)
            raise

        self.cache.set(tenant, token)
        self.logger.info(
            "Token acquired",
            extra={
                "tenant_id": tenant,
                "token": token_preview(token.access_token),
                "expires_at": token.expires_at.isoformat(),
                "has_refresh_token": token.refresh_token is not None,
            },
        )
        return token

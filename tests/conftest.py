"""
Shared fixtures for query gateway tests.

Provides an in-memory SQLite database, a deterministic application config,
a fixed-key vault and fakes for the clock, the HTTP transport and the
tenant credential store so no test touches the network.
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from sqlalchemy.orm import Session

from query_gateway_core.config import (
    AppConfig,
    DatabaseConfig,
    GatewayConfig,
    LoggingConfig,
    QueueConfig,
    SecurityConfig,
    reset_config,
    set_config,
)
from query_gateway_core.context.tenant_context import TenantContext
from query_gateway_core.db.db_config import DatabaseManager, import_all_models
from query_gateway_core.exceptions import CredentialNotFoundError, clear_correlation_id
from query_gateway_core.schemas.credential_schemas import TenantCredential
from query_gateway_core.schemas.query_schemas import OutboundRequest
from query_gateway_core.utils.encryption_utils import CredentialVault, reset_vault
from query_gateway_core.utils.http_transport import TransportResponse
from query_gateway_core.utils.json_utils import dumps
from query_gateway_core.utils.logger import reset_logging

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
BASE_URL = "https://ion.example.com"
PORTAL_URL = "https://sso.example.com/ACME_TST/as/"


@pytest.fixture
def test_config() -> AppConfig:
    """Deterministic configuration that ignores the process environment."""
    return AppConfig(
        environment="testing",
        debug=False,
        database=DatabaseConfig(connection_string="sqlite:///:memory:"),
        queue=QueueConfig(connection_string=""),
        logging=LoggingConfig(level="DEBUG", enable_queue_logging=False),
        security=SecurityConfig(encryption_key=TEST_KEY_HEX, allow_insecure_dev_key=False),
        gateway=GatewayConfig(base_url=BASE_URL),
    )


@pytest.fixture(autouse=True)
def reset_global_state(test_config):
    """Install the test config and clear every process-wide singleton around each test."""
    reset_logging()
    reset_vault()
    set_config(test_config)
    yield
    TenantContext.clear_current_tenant()
    clear_correlation_id()
    reset_vault()
    reset_logging()
    reset_config()


@pytest.fixture(scope="session")
def db_manager() -> DatabaseManager:
    """In-memory SQLite database manager with all models registered."""
    import_all_models()
    manager = DatabaseManager(DatabaseConfig(connection_string="sqlite:///:memory:"))
    yield manager
    manager.close()


@pytest.fixture(scope="function")
def db_session(db_manager: DatabaseManager) -> Session:
    """
    Fresh database session per test.

    Tables are created before and dropped after each test for isolation.
    """
    db_manager.create_tables()
    session = db_manager.get_session()

    yield session

    session.rollback()
    db_manager.close_session()
    db_manager.drop_tables()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(bytes.fromhex(TEST_KEY_HEX))


# ==================== FAKES ====================


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


Responder = Any  # TransportResponse, Exception or Callable[[OutboundRequest], TransportResponse]


class FakeTransport:
    """
    Transport that answers from scripted responses keyed by a URL fragment.

    Each route holds a list of responders consumed in order; the last one
    repeats. A responder is a TransportResponse, an exception to raise, or
    a callable taking the request.
    """

    def __init__(self):
        self.routes: List[Tuple[str, List[Responder]]] = []
        self.requests: List[OutboundRequest] = []
        self.timeouts: List[float] = []
        self._lock = threading.Lock()

    def on(self, url_fragment: str, *responders: Responder) -> "FakeTransport":
        self.routes.append((url_fragment, list(responders)))
        return self

    def send(self, request: OutboundRequest, timeout: float, stage: str) -> TransportResponse:
        with self._lock:
            self.requests.append(request)
            self.timeouts.append(timeout)
            for fragment, responders in self.routes:
                if fragment in request.url:
                    responder = responders.pop(0) if len(responders) > 1 else responders[0]
                    break
            else:
                raise AssertionError(f"Unexpected request to {request.url}")

        if isinstance(responder, Exception):
            raise responder
        if callable(responder):
            return responder(request)
        return responder

    def calls_to(self, url_fragment: str) -> List[OutboundRequest]:
        with self._lock:
            return [r for r in self.requests if url_fragment in r.url]


class FakeCredentialStore:
    """In-memory tenant credential store."""

    def __init__(self, credentials: Optional[Dict[str, TenantCredential]] = None):
        self.credentials = dict(credentials or {})
        self.lookups = 0

    def add(self, credential: TenantCredential) -> None:
        self.credentials[credential.tenant_name] = credential

    def get_credential(self, tenant_name: str) -> TenantCredential:
        self.lookups += 1
        if tenant_name not in self.credentials:
            raise CredentialNotFoundError(
                f"No credentials configured for tenant '{tenant_name}'", tenant_name=tenant_name
            )
        return self.credentials[tenant_name]


def json_response(payload: Any, status_code: int = 200) -> TransportResponse:
    return TransportResponse(
        status_code=status_code, text=dumps(payload), headers={"Content-Type": "application/json"}
    )


def token_response(
    access_token: str = "access-1",
    expires_in: int = 3600,
    refresh_token: Optional[str] = "refresh-1",
    scope: Optional[str] = None,
) -> TransportResponse:
    payload: Dict[str, Any] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
    }
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    if scope is not None:
        payload["scope"] = scope
    return json_response(payload)


def xml_response(body: str, status_code: int = 200) -> TransportResponse:
    return TransportResponse(
        status_code=status_code, text=body, headers={"Content-Type": "text/xml; charset=utf-8"}
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def responses():
    """Builders for scripted transport responses."""

    class _Responses:
        json = staticmethod(json_response)
        token = staticmethod(token_response)
        xml = staticmethod(xml_response)

        @staticmethod
        def status(status_code: int, text: str = "") -> TransportResponse:
            return TransportResponse(status_code=status_code, text=text)

    return _Responses


@pytest.fixture
def credential_data() -> Callable[..., Dict[str, Any]]:
    """Factory for valid tenant credential field sets."""

    def _make(tenant_name: str = "ACME_TST", **overrides: Any) -> Dict[str, Any]:
        data = {
            "tenant_name": tenant_name,
            "client_id": f"{tenant_name}~client",
            "client_secret": "client-secret-value",
            "client_name": "Gateway client",
            "identity_url": "https://mingle-sso.example.com",
            "portal_url": PORTAL_URL,
            "service_account_access_key": f"{tenant_name}#access",
            "service_account_secret_key": "service-secret-value",
        }
        data.update(overrides)
        return data

    return _make


@pytest.fixture
def make_credential(credential_data) -> Callable[..., TenantCredential]:
    def _make(tenant_name: str = "ACME_TST", **overrides: Any) -> TenantCredential:
        return TenantCredential(**credential_data(tenant_name, **overrides))

    return _make


@pytest.fixture
def credential_store(make_credential) -> FakeCredentialStore:
    return FakeCredentialStore({"ACME_TST": make_credential("ACME_TST", ln_company="121")})

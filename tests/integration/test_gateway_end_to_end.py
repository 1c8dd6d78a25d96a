"""
End-to-end gateway flow against a real SQLite credential store.

Tenants are provisioned through CredentialService, secrets are stored
encrypted, and the dispatcher resolves them from the database on every
call. Only the network is scripted.
"""

from unittest.mock import Mock

import pytest

from query_gateway_core.constants import HealthCheckStatus
from query_gateway_core.db.db_credential_models import TenantCredentialRecord
from query_gateway_core.gateway.dispatcher import GatewayDispatcher
from query_gateway_core.schemas.credential_schemas import (
    TenantCredentialCreate,
    TenantCredentialUpdate,
)
from query_gateway_core.services.credential_service import CredentialService
from query_gateway_core.services.token_service import TokenManager
from query_gateway_core.utils.encryption_utils import CredentialVault

TOKEN_URL = "token.oauth2"
SOAP_URL = "/LN/c4ws/services/"
ODATA_URL = "/LN/lnapi/odata/"

SOAP_ORDERS = (
    '<S:Envelope xmlns:S="http://schemas.xmlsoap.org/soap/envelope/"><S:Body>'
    "<ListResponse><DataArea>"
    "<SalesOrder><OrderNumber>SO-1</OrderNumber><Total>120</Total></SalesOrder>"
    "<SalesOrder><OrderNumber>SO-2</OrderNumber><Total>80</Total></SalesOrder>"
    "<SalesOrder><OrderNumber>SO-3</OrderNumber><Total>300</Total></SalesOrder>"
    "</DataArea></ListResponse>"
    "</S:Body></S:Envelope>"
)


@pytest.fixture
def audit():
    return Mock()


@pytest.fixture
def service(db_session, vault, audit):
    return CredentialService(db_session, vault=vault, audit=audit)


@pytest.fixture
def tenant(service, credential_data, db_session):
    data = credential_data("ACME_TST", ln_company="121", ln_identity="svc-user")
    service.register_identity(
        "ACME_TST", data["service_account_access_key"], data["service_account_secret_key"]
    )
    service.provision(TenantCredentialCreate(**data))
    db_session.commit()
    return "ACME_TST"


@pytest.fixture
def token_manager(service, fake_transport, fake_clock, test_config):
    return TokenManager(service, transport=fake_transport, clock=fake_clock, config=test_config)


@pytest.fixture
def gateway(service, token_manager, fake_transport, audit, test_config):
    return GatewayDispatcher(
        service,
        token_manager=token_manager,
        transport=fake_transport,
        audit=audit,
        config=test_config,
    )


class TestProvisionedTenantQueries:
    """Test queries for a tenant provisioned in the database."""

    def test_connection_then_soap_query(
        self, service, token_manager, gateway, tenant, fake_transport, responses
    ):
        fake_transport.on(TOKEN_URL, responses.token("db-token"))
        fake_transport.on(SOAP_URL, responses.xml(SOAP_ORDERS))

        connection = service.test_connection(tenant, token_manager)
        assert connection.success is True
        assert service.latest_health_check(tenant).status == HealthCheckStatus.CONNECTED.value

        result = gateway.execute(
            tenant,
            "SalesOrder",
            "soap",
            query="SELECT * FROM SalesOrder WHERE Status='Open' LIMIT 2",
        )

        assert result.success is True, result.error
        assert [r["OrderNumber"] for r in result.records] == ["SO-1", "SO-2"]
        assert result.metadata["total_records"] == 3
        # The connection test already cached the token
        assert len(fake_transport.calls_to(TOKEN_URL)) == 1

        [soap_request] = fake_transport.calls_to(SOAP_URL)
        assert soap_request.headers["Authorization"] == "Bearer db-token"
        assert soap_request.headers["X-Infor-LnCompany"] == "121"
        assert soap_request.headers["X-Infor-LnIdentity"] == "svc-user"
        assert "client-secret-value" not in soap_request.body
        assert "service-secret-value" not in soap_request.body
        assert "<Status>Open</Status>" in soap_request.body

    def test_rest_query_uses_decrypted_service_account(
        self, gateway, tenant, fake_transport, responses
    ):
        fake_transport.on(TOKEN_URL, responses.token())
        fake_transport.on(ODATA_URL, responses.json({"value": [{"Id": 1}, {"Id": 2}]}))

        result = gateway.execute(
            tenant,
            "Orders",
            "rest",
            query={"Status": "Open"},
            extra={"oDataService": "SalesOrders", "limit": 1},
        )

        assert result.success is True, result.error
        assert result.records == [{"Id": 1}]

        [token_request] = fake_transport.calls_to(TOKEN_URL)
        assert "username=ACME_TST%23access" in token_request.body
        assert "password=service-secret-value" in token_request.body
        [odata_request] = fake_transport.calls_to(ODATA_URL)
        assert odata_request.params["$filter"] == "Status eq 'Open'"

    def test_token_reused_across_protocols(self, gateway, tenant, fake_transport, responses):
        fake_transport.on(TOKEN_URL, responses.token())
        fake_transport.on(SOAP_URL, responses.xml(SOAP_ORDERS))
        fake_transport.on(ODATA_URL, responses.json({"value": []}))

        gateway.execute(tenant, "SalesOrder", "soap")
        gateway.execute(tenant, "Orders", "odata", extra={"oDataService": "SalesOrders"})

        assert len(fake_transport.calls_to(TOKEN_URL)) == 1


class TestTenantLifecycle:
    """Test how credential changes surface in gateway results."""

    def test_deactivated_tenant_rejected(self, service, gateway, tenant, fake_transport, db_session):
        service.update(tenant, TenantCredentialUpdate(is_active=False))
        db_session.commit()

        result = gateway.execute(tenant, "SalesOrder", "soap")

        assert result.success is False
        assert result.error.code == "VALIDATION_ERROR"
        assert fake_transport.requests == []

    def test_deleted_tenant_not_found(
        self, service, token_manager, gateway, tenant, fake_transport, responses, db_session, audit
    ):
        fake_transport.on(TOKEN_URL, responses.token())
        fake_transport.on(SOAP_URL, responses.xml(SOAP_ORDERS))
        assert gateway.execute(tenant, "SalesOrder", "soap").success is True

        service.delete(tenant, token_manager=token_manager, force=True)
        db_session.commit()

        result = gateway.execute(tenant, "SalesOrder", "soap")

        assert result.success is False
        assert result.error.code == "TENANT_NOT_FOUND"
        assert token_manager.has_valid_token(tenant) is False
        audit.notify.assert_any_call("credential_deleted", tenant=tenant, forced=True)

    def test_secret_written_under_other_key(self, gateway, tenant, fake_transport, db_session):
        other_vault = CredentialVault(bytes.fromhex("ff" * 32))
        record = db_session.query(TenantCredentialRecord).filter_by(tenant_name=tenant).one()
        record.client_secret = other_vault.encrypt("client-secret-value")
        db_session.commit()

        result = gateway.execute(tenant, "SalesOrder", "soap")

        assert result.success is False
        assert result.error.code == "DECRYPTION_ERROR"
        assert fake_transport.requests == []

    def test_rejected_credentials_audited(self, gateway, tenant, fake_transport, responses, audit):
        fake_transport.on(TOKEN_URL, responses.status(401, '{"error": "invalid_grant"}'))

        result = gateway.execute(tenant, "SalesOrder", "soap")

        assert result.success is False
        assert result.error.code == "AUTHENTICATION_ERROR"
        audit.authentication_failed.assert_called_once()

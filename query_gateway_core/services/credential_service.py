"""
Tenant credential lifecycle: provisioning, lookup, update, deletion and
connection testing.

Secrets are encrypted through the vault before they reach the database and
decrypted only when a ``TenantCredential`` is handed to a caller. This
service is the tenant-credential store the gateway dispatcher reads from.
Transactions are managed by the caller; the service only flushes.
"""

import time
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..constants import AuditEvent, HealthCheckStatus
from ..context.operation_context import operation
from ..db.db_credential_models import RegisteredIdentity, TenantCredentialRecord, TenantHealthCheck
from ..exceptions import (
    BaseError,
    CredentialNotFoundError,
    DecryptionError,
    ErrorCode,
    ServiceError,
    ValidationError,
    duplicate,
)
from ..schemas.credential_schemas import (
    SECRET_FIELDS,
    ConnectionTestResult,
    TenantCredential,
    TenantCredentialCreate,
    TenantCredentialSummary,
    TenantCredentialUpdate,
)
from ..utils.encryption_utils import CredentialVault, decrypt_fields, encrypt_fields, get_vault
from ..utils.logger import get_logger
from .audit_service import AuditNotifier
from .token_service import TokenManager

_CREDENTIAL_COLUMNS = tuple(
    name for name in TenantCredential.model_fields if name not in ("is_active",)
)
_NULLABLE_FIELDS = frozenset({"client_name", "scope", "ln_company", "ln_identity"})


class CredentialService:
    """
    Service for managing tenant OAuth2 credentials.

    Every tenant name maps to exactly one credential; client ids are unique
    across tenants. The service-account key pair must belong to an identity
    registered for the tenant before the tenant can be provisioned.
    """

    def __init__(
        self,
        session: Session,
        vault: Optional[CredentialVault] = None,
        audit: Optional[AuditNotifier] = None,
    ):
        """Initialize with SQLAlchemy session, an optional vault and audit notifier."""
        self.session = session
        self.vault = vault or get_vault()
        self.audit = audit
        self.logger = get_logger()

    def _get_record(self, tenant_name: str) -> TenantCredentialRecord:
        record = (
            self.session.query(TenantCredentialRecord)
            .filter(TenantCredentialRecord.tenant_name == tenant_name)
            .first()
        )
        if not record:
            raise CredentialNotFoundError(
                f"No credentials configured for tenant '{tenant_name}'", tenant_name=tenant_name
            )
        return record

    def _check_identity(self, tenant_name: str, access_key: str, secret_key: str) -> None:
        """Raise unless the key pair matches an identity registered for the tenant."""
        identity = (
            self.session.query(RegisteredIdentity)
            .filter(
                RegisteredIdentity.tenant_name == tenant_name,
                RegisteredIdentity.access_key == access_key,
            )
            .first()
        )
        if identity is None or self.vault.decrypt(identity.secret_key) != secret_key:
            raise ValidationError(
                "Service account credentials do not match a registered identity for this tenant",
                field="service_account_access_key",
                tenant_name=tenant_name,
            )

    def _check_client_id_free(self, client_id: str, tenant_name: Optional[str] = None) -> None:
        query = self.session.query(TenantCredentialRecord).filter(
            TenantCredentialRecord.client_id == client_id
        )
        if tenant_name is not None:
            query = query.filter(TenantCredentialRecord.tenant_name != tenant_name)
        if query.first():
            raise duplicate("TenantCredential", client_id=client_id)

    def _flush(self, tenant_name: str, operation_name: str) -> None:
        try:
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            if "unique" in str(e).lower():
                raise duplicate("TenantCredential", cause=e, tenant_name=tenant_name) from e
            raise ServiceError(
                "Tenant credential violates data integrity constraints",
                error_code=ErrorCode.DATABASE_ERROR,
                operation=operation_name,
                tenant_name=tenant_name,
                cause=e,
            ) from e

    def _to_credential(self, record: TenantCredentialRecord) -> TenantCredential:
        data = {name: getattr(record, name) for name in _CREDENTIAL_COLUMNS}
        try:
            data = decrypt_fields(self.vault, data, SECRET_FIELDS)
        except DecryptionError as e:
            e.add_context(tenant_name=record.tenant_name)
            raise
        return TenantCredential(**data, is_active=record.is_active)

    @operation("credentials.register_identity")
    def register_identity(self, tenant_name: str, access_key: str, secret_key: str) -> str:
        """
        Register a service-account key pair for a tenant.

        Re-registering an existing access key replaces its secret.

        Returns:
            ID of the identity record
        """
        if not tenant_name or not access_key or not secret_key:
            raise ValidationError(
                "tenant_name, access_key and secret_key are required", error_code=ErrorCode.MISSING_REQUIRED
            )

        identity = (
            self.session.query(RegisteredIdentity)
            .filter(
                RegisteredIdentity.tenant_name == tenant_name,
                RegisteredIdentity.access_key == access_key,
            )
            .first()
        )
        if identity is None:
            identity = RegisteredIdentity(tenant_name=tenant_name, access_key=access_key)
            self.session.add(identity)
        identity.secret_key = self.vault.encrypt(secret_key)
        self._flush(tenant_name, "register_identity")

        self.logger.info(
            "Identity registered",
            extra={"tenant_name": tenant_name, "identity_id": identity.id},
        )
        return identity.id

    @operation("credentials.provision")
    def provision(self, credential: TenantCredentialCreate) -> TenantCredentialSummary:
        """
        Provision a new tenant.

        Raises:
            DuplicateError: Tenant name or client id already in use
            ValidationError: Service-account keys do not match a registered identity
        """
        self.logger.info(
            "Provisioning tenant",
            extra={
                "tenant_name": credential.tenant_name,
                "client_id": credential.client_id,
                "portal_url": credential.portal_url,
            },
        )

        existing = (
            self.session.query(TenantCredentialRecord)
            .filter(TenantCredentialRecord.tenant_name == credential.tenant_name)
            .first()
        )
        if existing:
            raise duplicate("TenantCredential", tenant_name=credential.tenant_name)
        self._check_client_id_free(credential.client_id)
        self._check_identity(
            credential.tenant_name,
            credential.service_account_access_key,
            credential.service_account_secret_key,
        )

        data = encrypt_fields(self.vault, credential.model_dump(), SECRET_FIELDS)
        record = TenantCredentialRecord(**data, is_active=True)
        self.session.add(record)
        self._flush(credential.tenant_name, "provision")

        self.logger.info(
            "Tenant provisioned",
            extra={"tenant_name": record.tenant_name, "credential_id": record.id},
        )
        if self.audit:
            self.audit.notify(
                AuditEvent.CREDENTIAL_PROVISIONED.value,
                tenant=record.tenant_name,
                client_id=record.client_id,
            )
        return TenantCredentialSummary.model_validate(record)

    @operation("credentials.update")
    def update(self, tenant_name: str, changes: TenantCredentialUpdate) -> TenantCredentialSummary:
        """Apply only the fields explicitly set on ``changes``."""
        record = self._get_record(tenant_name)
        data = {
            name: value
            for name, value in changes.model_dump(exclude_unset=True).items()
            if value is not None or name in _NULLABLE_FIELDS
        }

        if "client_id" in data and data["client_id"] != record.client_id:
            self._check_client_id_free(data["client_id"], tenant_name)

        if "service_account_access_key" in data or "service_account_secret_key" in data:
            current = self._to_credential(record)
            self._check_identity(
                tenant_name,
                data.get("service_account_access_key", current.service_account_access_key),
                data.get("service_account_secret_key", current.service_account_secret_key),
            )

        # Validate the merged result before anything is written
        merged = self._to_credential(record).model_dump()
        merged.update({k: v for k, v in data.items() if k != "is_active"})
        try:
            TenantCredential(**merged)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid credential update: {e.error_count()} error(s)",
                tenant_name=tenant_name,
                validation_errors=e.errors(include_url=False),
                cause=e,
            ) from e

        for name, value in encrypt_fields(self.vault, data, SECRET_FIELDS).items():
            setattr(record, name, value)
        self._flush(tenant_name, "update")

        self.logger.info(
            "Tenant credentials updated",
            extra={"tenant_name": tenant_name, "fields": sorted(data)},
        )
        return TenantCredentialSummary.model_validate(record)

    @operation("credentials.replace")
    def replace(self, tenant_name: str, credential: TenantCredentialCreate) -> TenantCredentialSummary:
        """Overwrite every field of an existing tenant; the tenant name cannot change."""
        if credential.tenant_name != tenant_name:
            raise ValidationError(
                "Tenant name cannot be changed by replace",
                field="tenant_name",
                tenant_name=tenant_name,
            )

        record = self._get_record(tenant_name)
        if credential.client_id != record.client_id:
            self._check_client_id_free(credential.client_id, tenant_name)
        self._check_identity(
            tenant_name,
            credential.service_account_access_key,
            credential.service_account_secret_key,
        )

        data = encrypt_fields(self.vault, credential.model_dump(), SECRET_FIELDS)
        for name, value in data.items():
            setattr(record, name, value)
        self._flush(tenant_name, "replace")

        self.logger.info("Tenant credentials replaced", extra={"tenant_name": tenant_name})
        return TenantCredentialSummary.model_validate(record)

    def get_credential(self, tenant_name: str) -> TenantCredential:
        """
        Return the decrypted credential for a tenant.

        Raises:
            CredentialNotFoundError: No tenant with that name
            DecryptionError: A stored secret is tampered with or was written under another key
        """
        return self._to_credential(self._get_record(tenant_name))

    def list_tenants(self, active_only: bool = False) -> List[TenantCredentialSummary]:
        query = self.session.query(TenantCredentialRecord)
        if active_only:
            query = query.filter(TenantCredentialRecord.is_active.is_(True))
        records = query.order_by(TenantCredentialRecord.tenant_name).all()
        return [TenantCredentialSummary.model_validate(r) for r in records]

    @operation("credentials.delete")
    def delete(
        self,
        tenant_name: str,
        token_manager: Optional[TokenManager] = None,
        force: bool = False,
    ) -> bool:
        """
        Delete a tenant and its connection history.

        A tenant holding a valid cached token has an active session and is
        only deleted with ``force``, which also drops the token.

        Raises:
            CredentialNotFoundError: No tenant with that name
            ValidationError: Active session and ``force`` not set (code CONFLICT)
        """
        record = self._get_record(tenant_name)

        if token_manager is not None and token_manager.has_valid_token(tenant_name):
            if not force:
                raise ValidationError(
                    f"Tenant '{tenant_name}' has an active session",
                    error_code=ErrorCode.CONFLICT,
                    tenant_name=tenant_name,
                )
            token_manager.invalidate(tenant_name)

        self.session.query(TenantHealthCheck).filter(
            TenantHealthCheck.tenant_name == tenant_name
        ).delete(synchronize_session=False)
        self.session.delete(record)
        self._flush(tenant_name, "delete")

        self.logger.info("Tenant deleted", extra={"tenant_name": tenant_name, "forced": force})
        if self.audit:
            self.audit.notify(AuditEvent.CREDENTIAL_DELETED.value, tenant=tenant_name, forced=force)
        return True

    @operation("credentials.test_connection")
    def test_connection(self, tenant_name: str, token_manager: TokenManager) -> ConnectionTestResult:
        """
        Try to obtain a token for the tenant and record the outcome.

        Failures are reported in the result and the health-check history,
        not raised.
        """
        check = TenantHealthCheck(tenant_name=tenant_name, status=HealthCheckStatus.TESTING.value)
        self.session.add(check)
        self.session.flush()

        start = time.perf_counter()
        try:
            credential = self.get_credential(tenant_name)
            token = token_manager.get_valid_token(tenant_name, credential=credential)
        except BaseError as e:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            check.status = HealthCheckStatus.ERROR.value
            check.response_time_ms = elapsed_ms
            check.error_message = e.message
            self.session.flush()
            self.logger.warning(
                "Connection test failed",
                extra={"tenant_name": tenant_name, "error_code": e.error_code.value},
            )
            return ConnectionTestResult(
                tenant_name=tenant_name,
                success=False,
                message=e.message,
                response_time_ms=elapsed_ms,
            )

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        check.status = HealthCheckStatus.CONNECTED.value
        check.response_time_ms = elapsed_ms
        self.session.flush()

        self.logger.info(
            "Connection test succeeded",
            extra={"tenant_name": tenant_name, "response_time_ms": elapsed_ms},
        )
        return ConnectionTestResult(
            tenant_name=tenant_name,
            success=True,
            message="Connected",
            response_time_ms=elapsed_ms,
            token_type=token.token_type,
            expires_at=token.expires_at,
            has_refresh_token=token.refresh_token is not None,
            scope=token.scope,
        )

    def latest_health_check(self, tenant_name: str) -> Optional[TenantHealthCheck]:
        return (
            self.session.query(TenantHealthCheck)
            .filter(TenantHealthCheck.tenant_name == tenant_name)
            .order_by(TenantHealthCheck.checked_at.desc())
            .first()
        )

    @staticmethod
    def tenant_headers(credential: TenantCredential) -> Dict[str, str]:
        """``X-Infor-LnCompany`` / ``X-Infor-LnIdentity`` for the tenant, when set."""
        return credential.infor_headers()

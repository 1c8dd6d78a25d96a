"""
Single entry point of the gateway.

``GatewayDispatcher.execute`` resolves the tenant, obtains a token, parses
the query, builds and sends the protocol request and trims the records.
It never raises: every failure comes back as a ``GatewayResult`` with
``success=False`` and an error code taken from the exception's
``gateway_code``.
"""

import time
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ..config import AppConfig, get_config
from ..context.operation_context import operation_scope
from ..context.tenant_context import tenant_context
from ..enums import GrantType, ProtocolKind
from ..exceptions import (
    AuthenticationError,
    BaseError,
    ValidationError,
    clear_correlation_id,
)
from ..parsing.filter_parser import FilterParser
from ..protocols.base_translator import ProtocolTranslator
from ..protocols.odata_translator import ODataTranslator
from ..protocols.soap_translator import SoapTranslator
from ..schemas.credential_schemas import TenantCredential
from ..schemas.query_schemas import (
    CachedToken,
    FilterCondition,
    GatewayResult,
    QueryRequestConfig,
    Record,
)
from ..services.audit_service import AuditNotifier
from ..services.token_service import CredentialStore, TokenManager
from ..utils.http_transport import (
    Deadline,
    HttpTransport,
    Transport,
    TransportResponse,
    effective_timeout,
)
from ..utils.logger import get_logger

QueryInput = Union[str, Mapping[str, Any], None]

PROTOCOL_ALIASES = {
    "soap": ProtocolKind.SOAP,
    "rest": ProtocolKind.REST,
    "odata": ProtocolKind.REST,
}

# camelCase and snake_case spellings accepted in ``extra`` and parameter maps
_EXTRA_KEYS = {
    "oDataService": "odata_service",
    "odataService": "odata_service",
    "odata_service": "odata_service",
    "service": "odata_service",
    "entityName": "entity_name",
    "entity_name": "entity_name",
    "entity": "entity_name",
    "expand": "expand",
    "$expand": "expand",
    "select": "select",
    "$select": "select",
    "orderBy": "order_by",
    "order_by": "order_by",
    "$orderby": "order_by",
    "limit": "limit",
    "offset": "offset",
}


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]


class GatewayDispatcher:
    """
    Orchestrates one gateway call end to end.

    Collaborators are injected: a credential store with
    ``get_credential(tenant_name)``, the token manager, the HTTP transport
    and an optional audit notifier for authentication failures.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        token_manager: Optional[TokenManager] = None,
        transport: Optional[Transport] = None,
        audit: Optional[AuditNotifier] = None,
        parser: Optional[FilterParser] = None,
        translators: Optional[Dict[ProtocolKind, ProtocolTranslator]] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or get_config()
        self.credential_store = credential_store
        self.transport = transport or HttpTransport()
        self.token_manager = token_manager or TokenManager(
            credential_store, transport=self.transport, config=self.config
        )
        self.audit = audit
        self.parser = parser or FilterParser()
        self.translators = translators or {
            ProtocolKind.SOAP: SoapTranslator(self.config.gateway),
            ProtocolKind.REST: ODataTranslator(self.config.gateway),
        }
        self.logger = get_logger()

    def execute(
        self,
        tenant: str,
        table: str,
        protocol: Union[str, ProtocolKind],
        action: Optional[str] = None,
        query: QueryInput = None,
        extra: Optional[Mapping[str, Any]] = None,
        deadline_seconds: Optional[float] = None,
    ) -> GatewayResult:
        """
        Run one query against a tenant's SOAP or OData service.

        Args:
            tenant: Tenant name as provisioned in the credential store
            table: SOAP service or OData entity set
            protocol: ``soap`` or ``rest`` (``odata`` is accepted as an alias)
            action: SOAP action (default ``List``); REST only allows read actions
            query: SQL-ish text (``WHERE ... ORDER BY ... LIMIT n``) or a parameter map
            extra: Overrides for ``oDataService``, ``entityName``, ``expand``,
                ``select``, ``orderBy``, ``limit`` and ``offset``
            deadline_seconds: Bound on the whole call including token acquisition

        Returns:
            GatewayResult; ``metadata`` always carries ``elapsed_ms``
        """
        start = time.perf_counter()
        protocol_name = protocol.value if isinstance(protocol, ProtocolKind) else str(protocol)
        metadata: Dict[str, Any] = {
            "tenant": tenant,
            "table": table,
            "protocol": protocol_name,
            "action": action,
        }

        def elapsed_ms() -> float:
            return round((time.perf_counter() - start) * 1000, 2)

        try:
            with tenant_context(tenant), operation_scope(
                "gateway.execute", table=table, protocol=protocol_name
            ):
                records, total, raw_response, resolved_action = self._run(
                    tenant, table, protocol_name, action, query, extra or {}, deadline_seconds
                )
            metadata["action"] = resolved_action
            self.logger.info(
                "Gateway call succeeded",
                extra={**metadata, "record_count": len(records), "total_records": total},
            )
            return GatewayResult.ok(
                records,
                raw_response=raw_response,
                elapsed_ms=elapsed_ms(),
                total_records=total,
                **metadata,
            )
        except BaseError as e:
            if isinstance(e, AuthenticationError):
                self._notify_authentication_failure(tenant, table, e)
            return GatewayResult.failure(
                e.gateway_code,
                e.message,
                details={k: v for k, v in e.context.items() if k != "cause"},
                raw_response=getattr(e, "upstream_body", None),
                elapsed_ms=elapsed_ms(),
                **metadata,
            )
        except Exception as e:
            self.logger.error(
                f"Unexpected gateway failure: {type(e).__name__}",
                extra={**metadata, "error_type": type(e).__name__, "error_details": str(e)},
                exc_info=True,
            )
            return GatewayResult.failure(
                "INTERNAL_ERROR",
                f"Unexpected error: {e}",
                details={"error_type": type(e).__name__},
                elapsed_ms=elapsed_ms(),
                **metadata,
            )
        finally:
            clear_correlation_id()

    def _run(
        self,
        tenant: str,
        table: str,
        protocol_name: str,
        action: Optional[str],
        query: QueryInput,
        extra: Mapping[str, Any],
        deadline_seconds: Optional[float],
    ) -> Tuple[List[Record], int, Optional[str], Optional[str]]:
        deadline = Deadline.optional(deadline_seconds)
        kind = self.resolve_protocol(protocol_name)
        translator = self.translators[kind]

        credential = self.credential_store.get_credential(tenant)
        if not credential.is_active:
            raise ValidationError(f"Tenant '{tenant}' is inactive", field="tenant", tenant=tenant)

        request_config = self.build_request_config(tenant, table, kind, action, query, extra)
        if kind == ProtocolKind.SOAP:
            resolved_action = request_config.action or self.config.gateway.default_soap_action
        else:
            resolved_action = request_config.action

        token = self.token_manager.get_valid_token(tenant, deadline=deadline, credential=credential)
        response = self._send(translator, request_config, token, credential, deadline)

        records = translator.parse_response(response, request_config)
        total = len(records)
        return (
            self.apply_window(records, request_config),
            total,
            translator.preview(response.text),
            resolved_action,
        )

    @staticmethod
    def resolve_protocol(protocol: str) -> ProtocolKind:
        kind = PROTOCOL_ALIASES.get(protocol.strip().lower()) if protocol else None
        if kind is None:
            raise ValidationError(
                f"Unsupported protocol '{protocol}'",
                field="protocol",
                supported=sorted(PROTOCOL_ALIASES),
            )
        return kind

    def build_request_config(
        self,
        tenant: str,
        table: str,
        kind: ProtocolKind,
        action: Optional[str],
        query: QueryInput,
        extra: Mapping[str, Any],
    ) -> QueryRequestConfig:
        """Parse ``query`` and merge ``extra`` into an immutable request config."""
        filters: List[FilterCondition] = []
        options: Dict[str, Any] = {}

        if isinstance(query, str):
            filters = self.parser.parse(self.parser.extract_where_clause(query))
            directives = self.parser.extract_directives(query)
            if "limit" in directives:
                options["limit"] = directives["limit"]
            if "orderBy" in directives:
                direction = directives.get("orderDirection", "asc")
                options["order_by"] = [
                    directives["orderBy"] if direction == "asc" else f"{directives['orderBy']} desc"
                ]
            expand = _as_list(directives.get("expand")) + _as_list(directives.get("$expand"))
            if expand:
                options["expand"] = list(dict.fromkeys(expand))
        elif query is not None:
            filters = self.parser.from_parameters(query)
            options.update(self._options_from(query))

        options.update(self._options_from(extra))

        try:
            return QueryRequestConfig(
                tenant=tenant,
                table=table,
                protocol=kind,
                action=action or None,
                filters=tuple(filters),
                **options,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid request: {e.error_count()} error(s)",
                validation_errors=e.errors(include_url=False, include_context=False),
                cause=e,
            ) from e

    @staticmethod
    def _options_from(source: Mapping[str, Any]) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        for key, value in source.items():
            target = _EXTRA_KEYS.get(key)
            if target is None or value is None:
                continue
            if target in ("expand", "select", "order_by"):
                options[target] = _as_list(value)
            elif target in ("limit", "offset"):
                try:
                    options[target] = int(value)
                except (TypeError, ValueError) as e:
                    raise ValidationError(
                        f"{key} must be an integer", field=key, value=str(value), cause=e
                    ) from e
            else:
                options[target] = str(value)
        return options

    def _send(
        self,
        translator: ProtocolTranslator,
        request_config: QueryRequestConfig,
        token: CachedToken,
        credential: TenantCredential,
        deadline: Optional[Deadline],
    ) -> TransportResponse:
        """Send the request; a 401 is retried once with a full grant if the token came from a refresh."""
        tenant = request_config.tenant
        retried = False

        while True:
            request = translator.build_request(request_config, token, credential)
            timeout = effective_timeout(
                deadline, self.config.gateway.request_timeout_seconds, translator.service_name
            )
            response = self.transport.send(request, timeout=timeout, stage=translator.service_name)
            if response.status_code != 401:
                return response

            self.token_manager.invalidate(tenant)
            if token.grant_type == GrantType.REFRESH_TOKEN and not retried:
                self.logger.warning(
                    "Target rejected refreshed token, retrying with full grant",
                    extra={"tenant_id": tenant, "table": request_config.table},
                )
                retried = True
                token = self.token_manager.get_valid_token(
                    tenant, deadline=deadline, force_full_grant=True, credential=credential
                )
                continue

            raise AuthenticationError(
                f"{translator.service_name} service rejected the bearer token",
                upstream_status=response.status_code,
                upstream_body=translator.preview(response.text),
                grant_type=token.grant_type.value,
                tenant_name=tenant,
            )

    def apply_window(self, records: List[Record], request_config: QueryRequestConfig) -> List[Record]:
        """Client-side ``offset``/``limit``; the configured default limit applies when none is given."""
        offset = request_config.offset or 0
        limit = (
            request_config.limit
            if request_config.limit is not None
            else self.config.gateway.default_limit
        )
        return records[offset : offset + limit]

    def _notify_authentication_failure(
        self, tenant: str, table: str, error: AuthenticationError
    ) -> None:
        if self.audit is None:
            return
        try:
            self.audit.authentication_failed(
                tenant,
                table=table,
                upstream_status=error.upstream_status,
                grant_type=error.grant_type,
                error_id=error.error_id,
            )
        except RuntimeError as e:
            # Executor already shut down
            self.logger.warning(
                "Audit notification dropped", extra={"tenant_id": tenant, "error_details": str(e)}
            )

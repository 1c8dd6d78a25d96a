"""
OData v4 translator for LN REST services.

Only ``$filter``, ``$expand``, ``$select`` and ``$orderby`` go to the
server. ``limit``/``offset`` are applied by the dispatcher after the whole
result comes back, the same as for SOAP.
"""

from typing import Any, Dict, List

from ..constants import InforHeader
from ..enums import FilterOperator
from ..exceptions import MalformedResponseError, UpstreamProtocolError, ValidationError
from ..schemas.credential_schemas import TenantCredential
from ..schemas.query_schemas import (
    CachedToken,
    FilterCondition,
    OutboundRequest,
    QueryRequestConfig,
    Record,
    normalize_record,
)
from ..utils.http_transport import TransportResponse
from ..utils.json_utils import loads
from .base_translator import ProtocolTranslator

ODATA_OPERATORS = {
    FilterOperator.EQ: "eq",
    FilterOperator.NE: "ne",
    FilterOperator.GT: "gt",
    FilterOperator.LT: "lt",
    FilterOperator.GE: "ge",
    FilterOperator.LE: "le",
}

READ_ACTIONS = frozenset({"list", "read", "get", "query"})


def odata_literal(value: Any) -> str:
    """Render a Python value as an OData literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


def condition_to_odata(condition: FilterCondition) -> str:
    field = condition.field
    operator = condition.operator

    if operator in ODATA_OPERATORS:
        return f"{field} {ODATA_OPERATORS[operator]} {odata_literal(condition.value)}"
    if operator == FilterOperator.IS_NULL:
        return f"{field} eq null"
    if operator == FilterOperator.IS_NOT_NULL:
        return f"{field} ne null"
    if operator == FilterOperator.BETWEEN:
        return (
            f"({field} ge {odata_literal(condition.value)} "
            f"and {field} le {odata_literal(condition.value2)})"
        )
    if operator == FilterOperator.IN:
        options = " or ".join(f"{field} eq {odata_literal(item)}" for item in condition.value)
        return f"({options})"

    # LIKE: leading and trailing % map to the string functions
    pattern = str(condition.value)
    starts, ends = pattern.startswith("%"), pattern.endswith("%") and len(pattern) > 1
    term = odata_literal(pattern[1 if starts else 0 : len(pattern) - 1 if ends else len(pattern)])
    if starts and ends:
        return f"contains({field},{term})"
    if starts:
        return f"endswith({field},{term})"
    if ends:
        return f"startswith({field},{term})"
    return f"{field} eq {term}"


def build_filter(conditions) -> str:
    """Join conditions with ``and``; the parser's flat OR is not carried over."""
    return " and ".join(condition_to_odata(c) for c in conditions)


class ODataTranslator(ProtocolTranslator):
    """Builds OData GET requests and reads the ``value`` array of their responses."""

    service_name = "odata"

    def build_url(self, request_config: QueryRequestConfig, credential: TenantCredential) -> str:
        if not request_config.odata_service:
            raise ValidationError(
                "REST queries need an OData service name", field="odata_service"
            )
        return self.tenant_url(
            credential,
            self.config.odata_services_path,
            "odata",
            request_config.odata_service,
            request_config.entity_name or request_config.table,
        )

    def build_params(self, request_config: QueryRequestConfig) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if request_config.filters:
            params["$filter"] = build_filter(request_config.filters)
        if request_config.expand:
            params["$expand"] = ",".join(request_config.expand)
        if request_config.select:
            params["$select"] = ",".join(request_config.select)
        if request_config.order_by:
            params["$orderby"] = ", ".join(request_config.order_by)
        return params

    def build_request(
        self,
        request_config: QueryRequestConfig,
        token: CachedToken,
        credential: TenantCredential,
    ) -> OutboundRequest:
        action = (request_config.action or "").strip().lower()
        if action and action not in READ_ACTIONS:
            raise ValidationError(
                f"Unsupported REST action '{request_config.action}'",
                field="action",
                supported=sorted(READ_ACTIONS),
            )

        headers = self.base_headers(token, credential)
        headers.update(
            {
                "Accept": "application/json",
                InforHeader.ODATA_VERSION.value: "4.0",
                InforHeader.ODATA_MAX_VERSION.value: "4.0",
            }
        )
        return OutboundRequest(
            method="GET",
            url=self.build_url(request_config, credential),
            headers=headers,
            params=self.build_params(request_config),
        )

    def _error_message(self, response: TransportResponse) -> str:
        default = f"OData service returned HTTP {response.status_code}"
        try:
            payload = loads(response.text)
        except ValueError:
            return default
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            return str(payload["error"].get("message") or default)
        return default

    def parse_response(
        self, response: TransportResponse, request_config: QueryRequestConfig
    ) -> List[Record]:
        if not response.ok:
            raise UpstreamProtocolError(
                self._error_message(response),
                service_name=self.service_name,
                upstream_status=response.status_code,
                upstream_body=self.preview(response.text),
            )

        try:
            payload = loads(response.text)
        except ValueError as e:
            raise MalformedResponseError(
                "OData response is not valid JSON",
                service_name=self.service_name,
                upstream_status=response.status_code,
                cause=e,
            ) from e

        if isinstance(payload, dict) and isinstance(payload.get("value"), list):
            rows = payload["value"]
        elif isinstance(payload, list):
            rows = payload
        else:
            rows = []

        self.logger.debug(
            "OData records extracted",
            extra={"table": request_config.table, "record_count": len(rows)},
        )
        return [normalize_record(row) for row in rows]

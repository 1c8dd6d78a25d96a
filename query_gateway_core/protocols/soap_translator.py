"""
SOAP translator for LN c4ws services.

Requests are built as dicts and serialized with ``xmltodict.unparse``;
responses are parsed with ``xmltodict.parse``, stripped of namespace
prefixes and split into one record per element directly under DataArea
(or under the single response element when there is no DataArea).
"""

import re
from typing import Any, Dict, List, Optional
from xml.parsers.expat import ExpatError

import xmltodict

from ..constants import InforHeader, Namespaces
from ..enums import FilterOperator
from ..exceptions import MalformedResponseError, UpstreamProtocolError
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
from .base_translator import ProtocolTranslator

_NUMERIC = re.compile(r"^-?(?:0|[1-9]\d*)(?:\.\d+)?$")
_NIL_VALUES = ("true", "1")


def format_xml_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_text(value: Any) -> Any:
    """``true``/``false`` to bool, plain decimal numbers to int or float."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if _NUMERIC.match(text):
        return float(text) if "." in text else int(text)
    return value


def clean_xml(node: Any) -> Any:
    """
    Drop namespace prefixes, ``xmlns`` declarations and the ``@`` attribute
    marker; ``xsi:nil`` elements become None and text-with-attribute
    elements collapse to their text.
    """
    if isinstance(node, list):
        return [clean_xml(item) for item in node]
    if not isinstance(node, dict):
        return coerce_text(node)

    for key, value in node.items():
        if key.lstrip("@").split(":")[-1] == "nil" and str(value).lower() in _NIL_VALUES:
            return None
    if "#text" in node:
        return coerce_text(node["#text"])

    cleaned: Dict[str, Any] = {}
    for key, value in node.items():
        if key.startswith("@xmlns"):
            continue
        clean_key = key.lstrip("@").split(":")[-1]
        cleaned[clean_key] = clean_xml(value)
    return cleaned


def find_key(node: Any, name: str) -> Any:
    """Depth-first search for the first value stored under ``name``."""
    if isinstance(node, dict):
        if name in node:
            return node[name]
        for value in node.values():
            found = find_key(value, name)
            if found is not None:
                return found
    elif isinstance(node, list):
        for item in node:
            found = find_key(item, name)
            if found is not None:
                return found
    return None


def child_records(node: Any) -> List[Dict[str, Any]]:
    """One record per element directly under ``node``.

    A repeated tag arrives from xmltodict as a list and contributes one
    record per item. Anything nested deeper stays inside its record.
    """
    if not isinstance(node, dict):
        return []
    records: List[Dict[str, Any]] = []
    for value in node.values():
        if isinstance(value, list):
            records.extend(item for item in value if isinstance(item, dict))
        elif isinstance(value, dict):
            records.append(value)
    return records


def extract_fault(body: Any) -> Optional[Dict[str, Any]]:
    """``{error, message, type}`` for a SOAP 1.1 or 1.2 Fault in ``body``, else None."""
    if not isinstance(body, dict) or "Fault" not in body:
        return None
    fault = body["Fault"] or {}

    fault_type = fault.get("faultcode")
    message = fault.get("faultstring")
    if fault_type is None and isinstance(fault.get("Code"), dict):
        fault_type = fault["Code"].get("Value")
    if message is None and isinstance(fault.get("Reason"), dict):
        message = fault["Reason"].get("Text")

    return {
        "error": True,
        "message": str(message) if message is not None else "SOAP fault",
        "type": str(fault_type) if fault_type is not None else "Fault",
    }


class SoapTranslator(ProtocolTranslator):
    """Builds c4ws SOAP envelopes and reads records out of their responses."""

    service_name = "soap"

    def action_for(self, request_config: QueryRequestConfig) -> str:
        return request_config.action or self.config.default_soap_action

    def condition_element(self, condition: FilterCondition) -> List[Any]:
        """XML element content(s) for one condition, one entry per element."""
        operator = condition.operator
        if operator == FilterOperator.EQ:
            return [format_xml_value(condition.value)]
        if operator in (FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL):
            return [{"@operator": condition.ion_operator, "@xsi:nil": "true"}]
        if operator == FilterOperator.IN:
            return [
                {"@operator": condition.ion_operator, "#text": format_xml_value(item)}
                for item in condition.value
            ]

        element = {"@operator": condition.ion_operator, "#text": format_xml_value(condition.value)}
        if operator == FilterOperator.BETWEEN:
            element["@value2"] = format_xml_value(condition.value2)
        return [element]

    def build_parameters(self, request_config: QueryRequestConfig) -> Dict[str, Any]:
        parameters: Dict[str, List[Any]] = {}
        for condition in request_config.filters:
            parameters.setdefault(condition.field, []).extend(self.condition_element(condition))
        return {
            field: elements[0] if len(elements) == 1 else elements
            for field, elements in parameters.items()
        }

    def build_envelope(self, request_config: QueryRequestConfig, credential: TenantCredential) -> str:
        action = self.action_for(request_config)
        envelope: Dict[str, Any] = {
            "@xmlns:soap": Namespaces.SOAP_ENVELOPE,
            "@xmlns:xsi": Namespaces.XSI,
            "@xmlns:xsd": Namespaces.XSD,
        }

        activation = {}
        if credential.ln_company:
            activation["company"] = credential.ln_company
        if credential.ln_identity:
            activation["identity"] = credential.ln_identity
        if activation:
            envelope["soap:Header"] = {
                "Activation": {"@xmlns": self.config.soap_namespace, **activation}
            }

        envelope["soap:Body"] = {
            action: {"@xmlns": self.config.soap_namespace, **self.build_parameters(request_config)}
        }
        return xmltodict.unparse({"soap:Envelope": envelope}, encoding="utf-8")

    def build_request(
        self,
        request_config: QueryRequestConfig,
        token: CachedToken,
        credential: TenantCredential,
    ) -> OutboundRequest:
        action = self.action_for(request_config)
        headers = self.base_headers(token, credential)
        headers.update(
            {
                "Content-Type": "text/xml; charset=utf-8",
                "Accept": "text/xml",
                InforHeader.SOAP_ACTION.value: f'"{action}"',
            }
        )
        return OutboundRequest(
            method="POST",
            url=self.tenant_url(credential, self.config.soap_services_path, request_config.table),
            headers=headers,
            body=self.build_envelope(request_config, credential),
        )

    def _parse_body(self, response: TransportResponse) -> Any:
        try:
            document = clean_xml(xmltodict.parse(response.text))
        except ExpatError as e:
            if not response.ok:
                raise UpstreamProtocolError(
                    f"SOAP service returned HTTP {response.status_code}",
                    service_name=self.service_name,
                    upstream_status=response.status_code,
                    upstream_body=self.preview(response.text),
                ) from e
            raise MalformedResponseError(
                f"SOAP response is not well-formed XML: {e}",
                service_name=self.service_name,
                upstream_status=response.status_code,
                cause=e,
            ) from e

        envelope = document.get("Envelope", document) if isinstance(document, dict) else document
        if isinstance(envelope, dict) and "Body" in envelope:
            return envelope["Body"]
        return envelope

    def parse_response(
        self, response: TransportResponse, request_config: QueryRequestConfig
    ) -> List[Record]:
        body = self._parse_body(response)

        fault = extract_fault(body)
        if fault:
            raise UpstreamProtocolError(
                fault["message"],
                service_name=self.service_name,
                upstream_status=response.status_code,
                upstream_body=self.preview(response.text),
                fault_type=fault["type"],
            )
        if not response.ok:
            raise UpstreamProtocolError(
                f"SOAP service returned HTTP {response.status_code}",
                service_name=self.service_name,
                upstream_status=response.status_code,
                upstream_body=self.preview(response.text),
            )

        data_area = find_key(body, "DataArea")
        if data_area is not None:
            records = child_records(data_area)
        else:
            records = self._response_records(body)

        self.logger.debug(
            "SOAP records extracted",
            extra={
                "table": request_config.table,
                "record_count": len(records),
                "has_data_area": data_area is not None,
            },
        )
        return [normalize_record(record) for record in records]

    @staticmethod
    def _response_records(node: Any) -> List[Dict[str, Any]]:
        # Unwrap response/result wrappers that hold exactly one element
        while isinstance(node, dict) and len(node) == 1:
            only = next(iter(node.values()))
            if not isinstance(only, dict):
                break
            node = only

        if not isinstance(node, dict) or all(value is None for value in node.values()):
            return []
        if any(isinstance(value, list) for value in node.values()) or all(
            isinstance(value, dict) for value in node.values()
        ):
            return child_records(node)
        return [node]

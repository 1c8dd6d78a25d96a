"""
Tests for SOAP envelope building and response parsing.
"""

import pytest
import xmltodict

from query_gateway_core.config import GatewayConfig
from query_gateway_core.exceptions import MalformedResponseError, UpstreamProtocolError
from query_gateway_core.parsing.filter_parser import FilterParser
from query_gateway_core.protocols.soap_translator import (
    SoapTranslator,
    child_records,
    clean_xml,
    coerce_text,
    extract_fault,
)
from query_gateway_core.schemas.query_schemas import CachedToken, QueryRequestConfig
from query_gateway_core.utils.http_transport import TransportResponse

BASE_URL = "https://ion.example.com"


def xml_response(body, status_code=200):
    return TransportResponse(status_code=status_code, text=body)


ENVELOPE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<S:Envelope xmlns:S="http://schemas.xmlsoap.org/soap/envelope/">'
    "<S:Body>{body}</S:Body>"
    "</S:Envelope>"
)

LIST_RESPONSE = ENVELOPE.format(
    body=(
        '<ListResponse xmlns="http://www.infor.com/ln/c4ws">'
        "<DataArea>"
        "<SalesOrder><OrderNumber>SO-1</OrderNumber><Total>10.50</Total><Open>true</Open></SalesOrder>"
        "<SalesOrder><OrderNumber>SO-2</OrderNumber><Total>7</Total><Open>false</Open></SalesOrder>"
        "<SalesOrder><OrderNumber>SO-3</OrderNumber><Total>0</Total>"
        '<ShipDate xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xsi:nil="true"/>'
        "</SalesOrder>"
        "</DataArea>"
        "</ListResponse>"
    )
)


@pytest.fixture
def translator():
    return SoapTranslator(GatewayConfig(base_url=BASE_URL))


@pytest.fixture
def token():
    return CachedToken(tenant_id="ACME_TST", access_token="tok-123", expires_at_epoch_ms=1)


def _config(where=None, **kwargs):
    filters = tuple(FilterParser().parse(where)) if where else ()
    return QueryRequestConfig(
        tenant="ACME_TST", table="SalesOrder", protocol="soap", filters=filters, **kwargs
    )


def _body(envelope_xml):
    document = xmltodict.parse(envelope_xml)
    return document["soap:Envelope"]["soap:Body"]


class TestHelpers:
    """Test XML value helpers."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("true", True),
            ("FALSE", False),
            ("42", 42),
            ("-3.25", -3.25),
            ("007", "007"),
            ("1e5", "1e5"),
            ("SO-1", "SO-1"),
        ],
    )
    def test_coerce_text(self, raw, expected):
        assert coerce_text(raw) == expected

    def test_clean_xml_strips_prefixes_and_attributes(self):
        node = {
            "@xmlns:ns": "urn:x",
            "ns:Item": {"@currency": "EUR", "#text": "12"},
            "ns:Note": {"@xsi:nil": "true"},
            "ns:Code": {"@type": "A", "Value": "X"},
        }

        assert clean_xml(node) == {"Item": 12, "Note": None, "Code": {"type": "A", "Value": "X"}}

    def test_child_records(self):
        data = {
            "Order": [{"Id": 1, "Lines": {"Line": [{"Item": "A"}, {"Item": "B"}]}}, {"Id": 2}],
            "Summary": {"Count": 2},
            "Note": "text",
        }

        assert child_records(data) == [
            {"Id": 1, "Lines": {"Line": [{"Item": "A"}, {"Item": "B"}]}},
            {"Id": 2},
            {"Count": 2},
        ]

    @pytest.mark.parametrize("node", [None, "text", []])
    def test_child_records_non_mapping(self, node):
        assert child_records(node) == []

    def test_extract_fault_soap11(self):
        body = {"Fault": {"faultcode": "soap:Server", "faultstring": "Company not found"}}
        assert extract_fault(body) == {
            "error": True,
            "message": "Company not found",
            "type": "soap:Server",
        }

    def test_extract_fault_soap12(self):
        body = {"Fault": {"Code": {"Value": "Receiver"}, "Reason": {"Text": "Boom"}}}
        assert extract_fault(body) == {"error": True, "message": "Boom", "type": "Receiver"}

    def test_no_fault(self):
        assert extract_fault({"ListResponse": {}}) is None


class TestBuildRequest:
    """Test the envelope and request shape."""

    def test_url_and_headers(self, translator, token, make_credential):
        request = translator.build_request(_config(), token, make_credential(ln_company="121"))

        assert request.method == "POST"
        assert request.url == f"{BASE_URL}/ACME_TST/LN/c4ws/services/SalesOrder"
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert request.headers["SOAPAction"] == '"List"'
        assert request.headers["Content-Type"] == "text/xml; charset=utf-8"
        assert request.headers["X-Infor-LnCompany"] == "121"

    def test_explicit_action(self, translator, token, make_credential):
        request = translator.build_request(_config(action="Show"), token, make_credential())

        assert request.headers["SOAPAction"] == '"Show"'
        assert "Show" in _body(request.body)

    def test_envelope_namespaces_and_activation(self, translator, make_credential):
        xml = translator.build_envelope(_config(), make_credential(ln_company="121", ln_identity="svc"))
        envelope = xmltodict.parse(xml)["soap:Envelope"]

        assert envelope["@xmlns:soap"] == "http://schemas.xmlsoap.org/soap/envelope/"
        assert envelope["@xmlns:xsi"] == "http://www.w3.org/2001/XMLSchema-instance"
        activation = envelope["soap:Header"]["Activation"]
        assert activation["company"] == "121"
        assert activation["identity"] == "svc"
        assert envelope["soap:Body"]["List"]["@xmlns"] == "http://www.infor.com/ln/c4ws"

    def test_no_header_without_activation(self, translator, make_credential):
        envelope = xmltodict.parse(translator.build_envelope(_config(), make_credential()))
        assert "soap:Header" not in envelope["soap:Envelope"]

    def test_filter_elements(self, translator, make_credential):
        where = (
            "Status='Open' AND Total >= 10 AND Price BETWEEN 1 AND 5 "
            "AND ShipDate IS NULL AND Region IN ('N','S')"
        )
        action = _body(translator.build_envelope(_config(where), make_credential()))["List"]

        assert action["Status"] == "Open"
        assert action["Total"] == {"@operator": "ge", "#text": "10"}
        assert action["Price"] == {"@operator": "between", "@value2": "5", "#text": "1"}
        assert action["ShipDate"] == {"@operator": "is_null", "@xsi:nil": "true"}
        assert action["Region"] == [
            {"@operator": "in", "#text": "N"},
            {"@operator": "in", "#text": "S"},
        ]

    def test_values_are_escaped(self, translator, make_credential):
        xml = translator.build_envelope(_config("Name='A & B <C>'"), make_credential())

        assert "A &amp; B &lt;C&gt;" in xml
        assert _body(xml)["List"]["Name"] == "A & B <C>"


class TestParseResponse:
    """Test record extraction and error mapping."""

    def test_data_area_records(self, translator):
        records = translator.parse_response(xml_response(LIST_RESPONSE), _config())

        assert records == [
            {"OrderNumber": "SO-1", "Total": 10.5, "Open": True},
            {"OrderNumber": "SO-2", "Total": 7, "Open": False},
            {"OrderNumber": "SO-3", "Total": 0, "ShipDate": None},
        ]

    def test_single_record_is_unwrapped(self, translator):
        xml = ENVELOPE.format(
            body="<ShowResponse><Result><Order><Id>1</Id><Name>A</Name></Order></Result></ShowResponse>"
        )

        assert translator.parse_response(xml_response(xml), _config()) == [{"Id": 1, "Name": "A"}]

    def test_nested_repeating_children_stay_in_their_record(self, translator):
        orders = "".join(
            f"<SalesOrder><OrderNumber>SO-{o}</OrderNumber><Lines>"
            + "".join(f"<Line><Item>I{o}{n}</Item></Line>" for n in range(3))
            + "</Lines></SalesOrder>"
            for o in range(2)
        )
        xml = ENVELOPE.format(body=f"<ListResponse><DataArea>{orders}</DataArea></ListResponse>")

        records = translator.parse_response(xml_response(xml), _config())

        assert [record["OrderNumber"] for record in records] == ["SO-0", "SO-1"]
        assert records[0]["Lines"] == {
            "Line": [{"Item": "I00"}, {"Item": "I01"}, {"Item": "I02"}]
        }

    def test_single_order_with_lines_is_one_record(self, translator):
        xml = ENVELOPE.format(
            body=(
                "<ListResponse><DataArea><SalesOrder><OrderNumber>SO-9</OrderNumber>"
                "<Lines><Line><Item>A</Item></Line><Line><Item>B</Item></Line></Lines>"
                "</SalesOrder></DataArea></ListResponse>"
            )
        )

        assert translator.parse_response(xml_response(xml), _config()) == [
            {"OrderNumber": "SO-9", "Lines": {"Line": [{"Item": "A"}, {"Item": "B"}]}}
        ]

    def test_repeated_elements_without_data_area(self, translator):
        xml = ENVELOPE.format(
            body=(
                "<ListResponse><Order><Id>1</Id><Tags><Tag>x</Tag><Tag>y</Tag></Tags></Order>"
                "<Order><Id>2</Id></Order></ListResponse>"
            )
        )

        assert translator.parse_response(xml_response(xml), _config()) == [
            {"Id": 1, "Tags": {"Tag": ["x", "y"]}},
            {"Id": 2},
        ]

    def test_empty_response(self, translator):
        xml = ENVELOPE.format(body="<ListResponse><DataArea/></ListResponse>")
        assert translator.parse_response(xml_response(xml), _config()) == []

    def test_fault_raises_upstream_error(self, translator):
        xml = ENVELOPE.format(
            body="<S:Fault><faultcode>S:Server</faultcode><faultstring>No such company</faultstring></S:Fault>"
        )

        with pytest.raises(UpstreamProtocolError) as exc_info:
            translator.parse_response(xml_response(xml, status_code=500), _config())

        assert exc_info.value.message == "No such company"
        assert exc_info.value.fault_type == "S:Server"
        assert exc_info.value.upstream_status == 500
        assert exc_info.value.gateway_code == "UPSTREAM_PROTOCOL_ERROR"

    def test_non_2xx_xml_body(self, translator):
        xml = ENVELOPE.format(body="<ListResponse/>")

        with pytest.raises(UpstreamProtocolError) as exc_info:
            translator.parse_response(xml_response(xml, status_code=503), _config())
        assert exc_info.value.upstream_status == 503

    def test_non_2xx_html_body(self, translator):
        with pytest.raises(UpstreamProtocolError) as exc_info:
            translator.parse_response(xml_response("<html><body>Bad Gateway", 502), _config())
        assert exc_info.value.upstream_body.startswith("<html>")

    def test_malformed_xml(self, translator):
        with pytest.raises(MalformedResponseError) as exc_info:
            translator.parse_response(xml_response("<Envelope><Body>"), _config())
        assert exc_info.value.gateway_code == "MALFORMED_RESPONSE"

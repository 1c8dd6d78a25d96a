"""
Pydantic schemas for gateway queries, tokens and results.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote, urlencode

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..enums import FilterOperator, GrantType, ProtocolKind

Scalar = Union[str, int, float, bool, None]
RecordValue = Union[Scalar, List["RecordValue"], Dict[str, "RecordValue"]]
Record = Dict[str, RecordValue]


def normalize_value(value: Any) -> RecordValue:
    """
    Reduce an arbitrary decoded value to scalars, lists and string-keyed maps.

    Tuples and sets become lists, Decimals become floats (ints when integral),
    datetimes become ISO strings and any other object its ``str()``.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [normalize_value(v) for v in value]
    return str(value)


def normalize_record(value: Any) -> Record:
    """Normalize one record; a non-mapping becomes ``{"value": ...}``."""
    normalized = normalize_value(value)
    if isinstance(normalized, dict):
        return normalized
    return {"value": normalized}


class FilterCondition(BaseModel):
    """One ``field operator value`` condition extracted from a WHERE clause."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    operator: FilterOperator
    value: Any = None
    value2: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def accept_ion_names(cls, v):
        if isinstance(v, str) and not isinstance(v, FilterOperator):
            return FilterOperator.from_ion_name(v)
        return v

    @model_validator(mode="after")
    def check_operator_values(self):
        if self.operator == FilterOperator.BETWEEN:
            if self.value is None or self.value2 is None:
                raise ValueError("BETWEEN requires both value and value2")
        elif self.operator in (FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL):
            if self.value is not None or self.value2 is not None:
                raise ValueError(f"{self.operator.value} takes no value")
        elif self.operator == FilterOperator.IN:
            if not isinstance(self.value, (list, tuple)):
                raise ValueError("IN requires a list of values")
            if not self.value:
                raise ValueError("IN requires at least one value")
        return self

    @property
    def ion_operator(self) -> str:
        return self.operator.ion_name

    def to_ion(self) -> Dict[str, Any]:
        """ION filter dict: ``{field, operator, value[, value2]}``."""
        result: Dict[str, Any] = {
            "field": self.field,
            "operator": self.ion_operator,
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
        }
        if self.operator == FilterOperator.BETWEEN:
            result["value2"] = self.value2
        return result


class QueryRequestConfig(BaseModel):
    """Everything a translator needs to build one outbound request. Immutable."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tenant: str = Field(..., min_length=1)
    table: str = Field(..., min_length=1, description="SOAP service or OData entity set")
    protocol: ProtocolKind
    action: Optional[str] = None
    filters: Tuple[FilterCondition, ...] = ()
    expand: Tuple[str, ...] = ()
    select: Tuple[str, ...] = ()
    order_by: Tuple[str, ...] = ()
    limit: Optional[int] = Field(None, ge=0)
    offset: Optional[int] = Field(None, ge=0)
    odata_service: Optional[str] = None
    entity_name: Optional[str] = None

    @field_validator("protocol", mode="before")
    @classmethod
    def lower_protocol(cls, v):
        if isinstance(v, str) and not isinstance(v, ProtocolKind):
            return v.strip().lower()
        return v

    @field_validator("expand", "select", "order_by", mode="before")
    @classmethod
    def split_csv(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(part.strip() for part in v.split(",") if part.strip())
        return tuple(v)


class CachedToken(BaseModel):
    """A bearer token held in the per-tenant cache."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    access_token: str = Field(..., repr=False)
    token_type: str = "Bearer"
    expires_at_epoch_ms: int
    refresh_token: Optional[str] = Field(None, repr=False)
    scope: Optional[str] = None
    grant_type: GrantType = GrantType.PASSWORD

    def is_expiring(self, now_ms: int, safety_margin_ms: int) -> bool:
        """True when the token must not be used as-is at ``now_ms``."""
        return now_ms + safety_margin_ms >= self.expires_at_epoch_ms

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at_epoch_ms / 1000, tz=timezone.utc)

    @property
    def authorization_header(self) -> str:
        scheme = "Bearer" if self.token_type.lower() == "bearer" else self.token_type
        return f"{scheme} {self.access_token}"


class OutboundRequest(BaseModel):
    """A fully built protocol request, ready for the transport."""

    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict, repr=False)
    params: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None

    @property
    def full_url(self) -> str:
        """URL with ``params`` percent-encoded; OData punctuation is left readable."""
        if not self.params:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return self.url + separator + urlencode(self.params, quote_via=quote, safe="$,'()/:")


class GatewayError(BaseModel):
    """Structured error carried by a failed GatewayResult."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class GatewayResult(BaseModel):
    """Terminal value returned to gateway callers."""

    success: bool
    record_count: int = 0
    records: List[Dict[str, Any]] = Field(default_factory=list)
    raw_response: Optional[str] = None
    error: Optional[GatewayError] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        records: List[Record],
        raw_response: Optional[str] = None,
        **metadata: Any,
    ) -> "GatewayResult":
        return cls(
            success=True,
            record_count=len(records),
            records=records,
            raw_response=raw_response,
            metadata=metadata,
        )

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        raw_response: Optional[str] = None,
        **metadata: Any,
    ) -> "GatewayResult":
        return cls(
            success=False,
            record_count=0,
            records=[],
            raw_response=raw_response,
            error=GatewayError(code=code, message=message, details=details or {}),
            metadata=metadata,
        )

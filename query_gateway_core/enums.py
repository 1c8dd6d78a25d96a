"""
Enums used across the query_gateway_core package.

This module contains enum definitions that are used by multiple modules
to avoid circular import issues.
"""

import enum


class FilterOperator(str, enum.Enum):
    """Comparison operators a filter condition can carry."""

    EQ = "EQ"
    NE = "NE"
    GT = "GT"
    LT = "LT"
    GE = "GE"
    LE = "LE"
    LIKE = "LIKE"
    IN = "IN"
    BETWEEN = "BETWEEN"
    IS_NULL = "IS_NULL"
    IS_NOT_NULL = "IS_NOT_NULL"

    @property
    def ion_name(self) -> str:
        """ION-style comparator name (``eq``, ``is_not_null``, ...)."""
        return self.value.lower()

    @classmethod
    def from_ion_name(cls, name: str) -> "FilterOperator":
        return cls(name.strip().upper())


class ProtocolKind(str, enum.Enum):
    """Outbound protocol families supported by the gateway."""

    SOAP = "soap"
    REST = "rest"


class TokenState(str, enum.Enum):
    """Per-tenant token lifecycle state."""

    NO_TOKEN = "NO_TOKEN"
    VALID = "VALID"
    REFRESHING = "REFRESHING"


class GrantType(str, enum.Enum):
    """OAuth2 grant types used against the tenant token endpoint."""

    PASSWORD = "password"
    REFRESH_TOKEN = "refresh_token"

"""Multi-tenant query gateway for LN SOAP and OData services."""

__version__ = "0.1.0"

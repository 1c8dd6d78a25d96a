"""Query parsing."""

from .filter_parser import FilterParser, conditions_from_ion_filters, generate_ion_filters

__all__ = ["FilterParser", "conditions_from_ion_filters", "generate_ion_filters"]

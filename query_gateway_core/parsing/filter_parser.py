"""
WHERE-clause parsing into ordered filter conditions.

Supported grammar is deliberately flat: conditions joined by ``AND``/``OR``
with no parenthesized grouping. Each fragment is tried against an ordered
list of rules; the first rule that matches wins. Fragments naming an OData
control parameter (``expand='...'``, ``$top=...``) are dropped silently,
anything else that matches no rule is dropped with a :class:`ParseWarning`.
"""

import re
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern

from ..enums import FilterOperator
from ..exceptions import ParseWarning
from ..schemas.query_schemas import FilterCondition
from ..utils.logger import get_logger

# Fragments of the form ``name = '...'`` for these names are directives, not filters
RESERVED_DIRECTIVES = ("expand", "$expand", "$select", "$filter", "$orderby", "$top", "$skip")

# Keys of a parameter mapping that never become filters
RESERVED_PARAMETERS = frozenset(
    {
        "tenant",
        "table",
        "apitype",
        "protocol",
        "service",
        "odataservice",
        "odata_service",
        "entity",
        "entityname",
        "entity_name",
        "action",
        "expand",
        "select",
        "orderby",
        "order_by",
        "orderdirection",
        "limit",
        "offset",
    }
)

OPERATOR_SUFFIXES = {
    "_gt": FilterOperator.GT,
    "_lt": FilterOperator.LT,
    "_ge": FilterOperator.GE,
    "_le": FilterOperator.LE,
    "_ne": FilterOperator.NE,
}

_FIELD = r"(?P<field>[A-Za-z_][\w.]*)"
_FIELD_NAME = re.compile(r"^" + _FIELD + r"$")
_QUOTED_OR_BARE = r"""(?:'(?:[^']|'')*'|"[^"]*"|[^\s'"]+)"""

_LOGICAL_SPLIT = re.compile(r"\s+(and|or)\s+", re.IGNORECASE)
_PENDING_BETWEEN = re.compile(r"\bbetween\s+" + _QUOTED_OR_BARE + r"\s*$", re.IGNORECASE)
_NUMBER = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_INTEGER = re.compile(r"^[+-]?\d+$")
_IN_ITEM = re.compile(r"""'(?:[^']|'')*'|"[^"]*"|[^,]+""")

_DIRECTIVE = re.compile(
    r"^(?P<name>"
    + "|".join(re.escape(name) for name in RESERVED_DIRECTIVES)
    + r")\s*=\s*['\"]?[^'\"]*['\"]?$",
    re.IGNORECASE,
)
_WHERE = re.compile(r"\bwhere\s+", re.IGNORECASE)
_TRAILING_CLAUSES = re.compile(r"\s+(?:order\s+by|group\s+by|having|limit)\b", re.IGNORECASE)
_LIMIT = re.compile(r"\blimit\s+(\d+)", re.IGNORECASE)
_ORDER_BY = re.compile(r"\border\s+by\s+([\w.]+)(?:\s+(asc|desc))?", re.IGNORECASE)
_EXPAND = re.compile(r"(?<![\w$])expand\s*=\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)
_DOLLAR_EXPAND = re.compile(r"\$expand\s*=\s*['\"]([^'\"]+)['\"]", re.IGNORECASE)


def unquote(raw: str) -> str:
    """Strip one pair of matching surrounding quotes; ``''`` inside becomes ``'``."""
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        inner = value[1:-1]
        return inner.replace("''", "'") if value[0] == "'" else inner
    return value


def coerce_scalar(raw: str) -> Any:
    """Unquote ``raw`` and return an int/float when the whole value is numeric."""
    value = unquote(raw)
    stripped = value.strip()
    if stripped and _NUMBER.match(stripped):
        return int(stripped) if _INTEGER.match(stripped) else float(stripped)
    return value


def _outside_quotes(prefix: str) -> bool:
    """True when the text following ``prefix`` is not inside a quoted literal."""
    return prefix.count("'") % 2 == 0 and prefix.count('"') % 2 == 0


def _search_unquoted(pattern: Pattern[str], text: str) -> Optional["re.Match[str]"]:
    """First match of ``pattern`` in ``text`` that starts outside quotes."""
    for match in pattern.finditer(text):
        if _outside_quotes(text[: match.start()]):
            return match
    return None


def _split_in_list(raw: str) -> List[str]:
    return [unquote(item) for item in (m.group(0).strip() for m in _IN_ITEM.finditer(raw)) if item]


@dataclass(frozen=True)
class _Rule:
    """A matcher and the builder that turns its match into a condition."""

    name: str
    pattern: Pattern[str]
    build: Callable[["re.Match[str]"], FilterCondition]


def _comparison(operator: FilterOperator) -> Callable[["re.Match[str]"], FilterCondition]:
    def build(match: "re.Match[str]") -> FilterCondition:
        return FilterCondition(
            field=match.group("field"), operator=operator, value=coerce_scalar(match.group("value"))
        )

    return build


def _compile(body: str) -> Pattern[str]:
    return re.compile(r"^" + _FIELD + body + r"$", re.IGNORECASE | re.DOTALL)


_RULES = (
    _Rule(
        "is_not_null",
        _compile(r"\s+is\s+not\s+null"),
        lambda m: FilterCondition(field=m.group("field"), operator=FilterOperator.IS_NOT_NULL),
    ),
    _Rule(
        "is_null",
        _compile(r"\s+is\s+null"),
        lambda m: FilterCondition(field=m.group("field"), operator=FilterOperator.IS_NULL),
    ),
    _Rule(
        "between",
        _compile(
            r"\s+between\s+(?P<value>" + _QUOTED_OR_BARE + r")\s+and\s+(?P<value2>"
            + _QUOTED_OR_BARE + r")"
        ),
        lambda m: FilterCondition(
            field=m.group("field"),
            operator=FilterOperator.BETWEEN,
            value=coerce_scalar(m.group("value")),
            value2=coerce_scalar(m.group("value2")),
        ),
    ),
    _Rule(
        "like",
        _compile(r"\s+like\s+(?P<value>'(?:[^']|'')*'|\"[^\"]*\")"),
        lambda m: FilterCondition(
            field=m.group("field"), operator=FilterOperator.LIKE, value=unquote(m.group("value"))
        ),
    ),
    _Rule(
        "in",
        _compile(r"\s+in\s*\((?P<value>[^)]*)\)"),
        lambda m: FilterCondition(
            field=m.group("field"),
            operator=FilterOperator.IN,
            value=_split_in_list(m.group("value")),
        ),
    ),
    _Rule("ge", _compile(r"\s*>=\s*(?P<value>.+)"), _comparison(FilterOperator.GE)),
    _Rule("le", _compile(r"\s*<=\s*(?P<value>.+)"), _comparison(FilterOperator.LE)),
    _Rule("ne", _compile(r"\s*(?:<>|!=)\s*(?P<value>.+)"), _comparison(FilterOperator.NE)),
    _Rule("eq", _compile(r"\s*=\s*(?P<value>.+)"), _comparison(FilterOperator.EQ)),
    _Rule("gt", _compile(r"\s*>\s*(?P<value>.+)"), _comparison(FilterOperator.GT)),
    _Rule("lt", _compile(r"\s*<\s*(?P<value>.+)"), _comparison(FilterOperator.LT)),
)


class FilterParser:
    """Turns SQL-like WHERE clauses and parameter maps into filter conditions."""

    def __init__(self):
        self.logger = get_logger()

    @staticmethod
    def split_conditions(clause: str) -> List[str]:
        """
        Split on top-level AND/OR keywords.

        Keywords inside quotes are kept, and the AND that belongs to a
        ``BETWEEN x AND y`` stays with its fragment.
        """
        fragments: List[str] = []
        start = 0
        for match in _LOGICAL_SPLIT.finditer(clause):
            candidate = clause[start : match.start()]
            inside_quotes = not _outside_quotes(candidate)
            inside_parens = candidate.count("(") > candidate.count(")")
            between_pending = (
                match.group(1).lower() == "and" and _PENDING_BETWEEN.search(candidate) is not None
            )
            if inside_quotes or inside_parens or between_pending:
                continue
            fragments.append(candidate)
            start = match.end()
        fragments.append(clause[start:])
        return [fragment.strip() for fragment in fragments if fragment.strip()]

    def parse_condition(self, fragment: str) -> Optional[FilterCondition]:
        """
        Parse one fragment.

        Returns None for directives and for fragments no rule matches; the
        latter also emit a ParseWarning.
        """
        fragment = fragment.strip()
        if _DIRECTIVE.match(fragment):
            return None

        for rule in _RULES:
            match = rule.pattern.match(fragment)
            if match is None:
                continue
            try:
                return rule.build(match)
            except ValueError as e:
                self._warn(fragment, f"{rule.name}: {e}")
                return None

        self._warn(fragment, "no matching pattern")
        return None

    def _warn(self, fragment: str, reason: str) -> None:
        self.logger.debug("Dropping unparseable filter fragment", extra={"fragment": fragment, "reason": reason})
        warnings.warn(ParseWarning(fragment, reason), stacklevel=3)

    def parse(self, where_clause: Optional[str]) -> List[FilterCondition]:
        """
        Parse a WHERE clause (without the WHERE keyword) into conditions.

        Empty or whitespace-only input yields an empty list. Unparseable
        fragments are omitted, never raised.
        """
        if not where_clause or not where_clause.strip():
            return []

        conditions = []
        for fragment in self.split_conditions(where_clause.strip()):
            condition = self.parse_condition(fragment)
            if condition is not None:
                conditions.append(condition)
        return conditions

    def extract_where_clause(self, query: str) -> Optional[str]:
        """
        Return the filter portion of a query.

        Uses the text after ``WHERE`` when present. A query without WHERE
        that is not a SELECT statement is treated as a bare condition list.
        Keywords inside quoted values never start or end the clause.
        """
        where = _search_unquoted(_WHERE, query)
        if where:
            clause = query[where.end() :]
        elif re.match(r"^\s*select\b", query, re.IGNORECASE):
            return None
        else:
            clause = query

        trailing = _search_unquoted(_TRAILING_CLAUSES, clause)
        if trailing:
            clause = clause[: trailing.start()]
        return clause.strip() or None

    def parse_sql(self, query: Optional[str]) -> Dict[str, Any]:
        """
        Parse a full query into a flat parameter map.

        Each filter field maps to its value with a parallel ``<field>_operator``
        key holding the ION comparator (IN conditions carry the list only).
        BETWEEN adds ``<field>_value2``. ``limit``, ``orderBy``/``orderDirection``,
        ``expand`` and ``$expand`` are added when present.
        """
        parameters: Dict[str, Any] = {}
        if not query or not query.strip():
            return parameters

        where_clause = self.extract_where_clause(query)
        for condition in self.parse(where_clause):
            parameters[condition.field] = condition.value
            if condition.operator == FilterOperator.IN:
                continue
            parameters[f"{condition.field}_operator"] = condition.ion_operator
            if condition.operator == FilterOperator.BETWEEN:
                parameters[f"{condition.field}_value2"] = condition.value2

        parameters.update(self.extract_directives(query))
        self.logger.debug("Parsed query", extra={"parameter_keys": sorted(parameters)})
        return parameters

    @staticmethod
    def extract_directives(query: str) -> Dict[str, Any]:
        """``limit``, ``orderBy``/``orderDirection``, ``expand`` and ``$expand`` found in ``query``."""
        parameters: Dict[str, Any] = {}
        limit_match = _search_unquoted(_LIMIT, query)
        if limit_match:
            parameters["limit"] = int(limit_match.group(1))

        order_match = _search_unquoted(_ORDER_BY, query)
        if order_match:
            parameters["orderBy"] = order_match.group(1)
            parameters["orderDirection"] = (order_match.group(2) or "asc").lower()

        expand_match = _search_unquoted(_EXPAND, query)
        if expand_match:
            parameters["expand"] = expand_match.group(1)

        dollar_expand_match = _search_unquoted(_DOLLAR_EXPAND, query)
        if dollar_expand_match:
            parameters["$expand"] = dollar_expand_match.group(1)
        return parameters

    def from_parameters(self, parameters: Mapping[str, Any]) -> List[FilterCondition]:
        """
        Build conditions from a flat parameter map.

        Reserved keys are skipped. ``<field>_gt``/``_lt``/``_ge``/``_le``/``_ne``
        keys select the comparator, as does an explicit ``<field>_operator``
        entry; ``<field>_value2`` supplies the BETWEEN upper bound. Lists
        become IN conditions and ``None`` an IS NULL condition. Keys whose field
        is not a plain identifier are dropped with a ParseWarning.
        """
        keys = set(parameters)
        conditions: List[FilterCondition] = []

        for key, value in parameters.items():
            if key.lower() in RESERVED_PARAMETERS or key.startswith("$"):
                continue
            if key.endswith("_operator") or key.endswith("_value2"):
                continue

            field, operator = key, None
            suffix = key[-3:].lower()
            if suffix in OPERATOR_SUFFIXES and len(key) > 3:
                field, operator = key[:-3], OPERATOR_SUFFIXES[suffix]

            if not _FIELD_NAME.match(field):
                self._warn(key, "invalid field name")
                continue
            if operator is None and f"{key}_operator" in keys:
                operator = FilterOperator.from_ion_name(str(parameters[f"{key}_operator"]))

            if operator is None:
                if isinstance(value, (list, tuple)):
                    operator = FilterOperator.IN
                elif value is None:
                    operator = FilterOperator.IS_NULL
                else:
                    operator = FilterOperator.EQ

            value2 = parameters.get(f"{field}_value2")
            try:
                conditions.append(
                    FilterCondition(
                        field=field,
                        operator=operator,
                        value=self._parameter_value(operator, value),
                        value2=coerce_scalar(value2) if isinstance(value2, str) else value2,
                    )
                )
            except ValueError as e:
                self._warn(key, str(e))

        return conditions

    @staticmethod
    def _parameter_value(operator: FilterOperator, value: Any) -> Any:
        if operator in (FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL):
            return None
        if operator == FilterOperator.IN and isinstance(value, str):
            return _split_in_list(value)
        if isinstance(value, str) and operator != FilterOperator.LIKE:
            return coerce_scalar(value)
        return value


def generate_ion_filters(conditions: Iterable[FilterCondition]) -> List[Dict[str, Any]]:
    """Render conditions as ION API filter objects."""
    filters = []
    for condition in conditions:
        ion_filter: Dict[str, Any] = {
            "comparisonOperator": condition.ion_operator,
            "attributeName": condition.field,
            "instanceValue": condition.value,
        }
        if condition.operator == FilterOperator.BETWEEN:
            ion_filter["instanceValue2"] = condition.value2
        filters.append(ion_filter)
    return filters


def conditions_from_ion_filters(filters: Iterable[Mapping[str, Any]]) -> List[FilterCondition]:
    """Inverse of :func:`generate_ion_filters`."""
    return [
        FilterCondition(
            field=ion_filter["attributeName"],
            operator=FilterOperator.from_ion_name(ion_filter["comparisonOperator"]),
            value=ion_filter.get("instanceValue"),
            value2=ion_filter.get("instanceValue2"),
        )
        for ion_filter in filters
    ]

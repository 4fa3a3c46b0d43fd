"""
Search / filter / sort / pagination composition for listing endpoints.

Every user-supplied value ends up in a bound parameter. Only column names
taken from ``SORTABLE_FIELDS`` and the fixed filter columns are written into
the SQL text.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import Select, text

from app.core.exceptions import ValidationError

SORTABLE_FIELDS = ("title", "created_at", "updated_at")
BOOLEAN_VALUES = {"true": True, "1": True, "false": False, "0": False}
DEFAULT_SORT_FIELD = "updated_at"


@dataclass
class Fragment:
    sql: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.sql)


@dataclass
class Page:
    page: int
    limit: int
    offset: int

    @property
    def sql(self) -> str:
        return "LIMIT :limit OFFSET :offset"

    @property
    def params(self) -> Dict[str, int]:
        return {"limit": self.limit, "offset": self.offset}


def _positive_int(value: Optional[str]) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _parse_datetime(name: str, value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(details=[{"field": name, "message": "Must be an ISO 8601 date"}])


class QueryComposer:
    """Turns untrusted query-string parameters into parameterized SQL fragments.

    ``alias`` is the table alias used in the generated text (``"n"`` gives
    ``n.title``). Values are parsed eagerly so malformed input is rejected
    before any statement runs.
    """

    def __init__(self, alias: str, params: Mapping[str, Any], default_limit: int, max_limit: int):
        self.prefix = f"{alias}." if alias else ""
        self.params = params
        self.default_limit = default_limit
        self.max_limit = max_limit

        self.search = self._build_search()
        self.filters = self._build_filters()
        self.order_by = self._build_sort()
        self.page = self._build_page()

    def _get(self, name: str) -> Optional[str]:
        value = self.params.get(name)
        if value is None:
            return None
        return str(value)

    def _build_search(self) -> Fragment:
        term = (self._get("search") or "").strip()
        if not term:
            return Fragment()
        p = self.prefix
        return Fragment(
            f"(LOWER({p}title) LIKE LOWER(:search) OR LOWER({p}content) LIKE LOWER(:search))",
            {"search": f"%{term}%"},
        )

    def _build_filters(self) -> Fragment:
        p = self.prefix
        clauses = []
        params: Dict[str, Any] = {}

        category_id = self._get("category_id")
        if category_id not in (None, ""):
            try:
                params["filter_category_id"] = int(category_id)
            except ValueError:
                raise ValidationError(details=[{"field": "category_id", "message": "Must be an integer"}])
            clauses.append(f"{p}category_id = :filter_category_id")

        is_pinned = self._get("is_pinned")
        if is_pinned not in (None, ""):
            flag = is_pinned.strip().lower()
            if flag not in BOOLEAN_VALUES:
                raise ValidationError(details=[{"field": "is_pinned", "message": "Must be true, false, 1 or 0"}])
            params["filter_is_pinned"] = BOOLEAN_VALUES[flag]
            clauses.append(f"{p}is_pinned = :filter_is_pinned")

        date_from = self._get("date_from")
        if date_from:
            params["filter_date_from"] = _parse_datetime("date_from", date_from)
            clauses.append(f"{p}created_at >= :filter_date_from")

        date_to = self._get("date_to")
        if date_to:
            params["filter_date_to"] = _parse_datetime("date_to", date_to)
            clauses.append(f"{p}created_at <= :filter_date_to")

        if not clauses:
            return Fragment()
        return Fragment(" AND ".join(clauses), params)

    def _build_sort(self) -> str:
        requested = self._get("sort")
        sort_field = requested if requested in SORTABLE_FIELDS else DEFAULT_SORT_FIELD
        direction = "ASC" if (self._get("order") or "").lower() == "asc" else "DESC"
        # id breaks ties so LIMIT/OFFSET pages never overlap
        return f"{self.prefix}{sort_field} {direction}, {self.prefix}id {direction}"

    def _build_page(self) -> Page:
        page = _positive_int(self._get("page")) or 1
        limit = min(_positive_int(self._get("limit")) or self.default_limit, self.max_limit)
        return Page(page=page, limit=limit, offset=(page - 1) * limit)

    @property
    def where(self) -> Fragment:
        """Search and filter predicates combined."""
        parts = [frag for frag in (self.search, self.filters) if frag]
        if not parts:
            return Fragment()
        params: Dict[str, Any] = {}
        for frag in parts:
            params.update(frag.params)
        return Fragment(" AND ".join(frag.sql for frag in parts), params)

    def apply_filters(self, stmt: Select) -> Select:
        where = self.where
        if where:
            stmt = stmt.where(text(where.sql).bindparams(**where.params))
        return stmt

    def apply(self, stmt: Select) -> Select:
        """Filters, ordering and the page window applied to a select."""
        stmt = self.apply_filters(stmt)
        return (
            stmt.order_by(text(self.order_by))
            .limit(self.page.limit)
            .offset(self.page.offset)
        )

    def pagination_meta(self, total_count: int) -> dict:
        page, limit = self.page.page, self.page.limit
        total_pages = math.ceil(total_count / limit) if limit else 0
        return {
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "total_count": total_count,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        }

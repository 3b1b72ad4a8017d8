"""
Query/filter engine for Aurora server.

Turns filter objects into parameterised SQL over test_results and
test_runs, parses REST query strings into filters, and serves the
faceting lookups used to populate filter UIs.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from .errors import ValidationError
from .models import RESULT_STATES, RUN_STATUSES
from .utils import to_iso

DEFAULT_LIMIT = 50
MAX_LIMIT = 1000

RESULT_SORT_COLUMNS = {
    "duration": "duration",
    "title": "title",
    "status": "state",
    "startTime": "start_time",
}
SORT_ORDERS = ("asc", "desc")

FACETS = {
    "files": "file",
    "browsers": "browser_name",
    "states": "state",
}

LIKE_ESCAPE = "\\"


@dataclass
class ResultFilter:
    """Conjunctive predicates over test results."""
    run_id: Optional[str] = None
    states: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    browsers: List[str] = field(default_factory=list)
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    duration_min: Optional[int] = None
    duration_max: Optional[int] = None
    search: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    has_retries: Optional[bool] = None
    has_screenshots: Optional[bool] = None

    def validate(self):
        unknown = [s for s in self.states if s not in RESULT_STATES]
        if unknown:
            raise ValidationError(
                f"Invalid status: {', '.join(unknown)}. Must be one of: {', '.join(RESULT_STATES)}"
            )
        if self.duration_min is not None and self.duration_min < 0:
            raise ValidationError("durationMin must be >= 0")
        if (self.duration_min is not None and self.duration_max is not None
                and self.duration_min > self.duration_max):
            raise ValidationError("durationMin must not exceed durationMax")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("dateFrom must not be after dateTo")
        return self


@dataclass
class RunFilter:
    """Conjunctive predicates over test runs."""
    statuses: List[str] = field(default_factory=list)
    browsers: List[str] = field(default_factory=list)
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    search: Optional[str] = None

    def validate(self):
        unknown = [s for s in self.statuses if s not in RUN_STATUSES]
        if unknown:
            raise ValidationError(
                f"Invalid status: {', '.join(unknown)}. Must be one of: {', '.join(RUN_STATUSES)}"
            )
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("dateFrom must not be after dateTo")
        return self


@dataclass
class SortSpec:
    key: str = "startTime"
    order: str = "desc"

    def validate(self):
        if self.key not in RESULT_SORT_COLUMNS:
            raise ValidationError(f"sortBy must be one of: {', '.join(RESULT_SORT_COLUMNS)}")
        if self.order not in SORT_ORDERS:
            raise ValidationError("sortOrder must be 'asc' or 'desc'")
        return self

    def order_by(self):
        # id breaks ties so paging is stable.
        direction = self.order.upper()
        return f"ORDER BY {RESULT_SORT_COLUMNS[self.key]} {direction}, id {direction}"


@dataclass
class Page:
    """One page of a filtered listing."""
    items: List[Any]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self):
        return self.offset + len(self.items) < self.total

    def pagination(self):
        return {
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "hasMore": self.has_more,
        }

    def serialize(self, to_dict: Callable = lambda item: item.to_dict()):
        return [to_dict(item) for item in self.items]


# --- SQL building ---

def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def _contains(text: str) -> str:
    return f"%{escape_like(text)}%"


def _like(column):
    return f"{column} LIKE ? ESCAPE '{LIKE_ESCAPE}'"


def _in(column, values, conditions, params):
    placeholders = ", ".join("?" for _ in values)
    conditions.append(f"{column} IN ({placeholders})")
    params.extend(values)


def result_conditions(criteria: ResultFilter) -> Tuple[List[str], List[Any]]:
    conditions: List[str] = []
    params: List[Any] = []

    if criteria.run_id:
        conditions.append("run_id = ?")
        params.append(criteria.run_id)
    if criteria.states:
        _in("state", list(criteria.states), conditions, params)
    if criteria.files:
        _in("file", list(criteria.files), conditions, params)
    if criteria.browsers:
        _in("browser_name", list(criteria.browsers), conditions, params)
    if criteria.date_from:
        conditions.append("start_time >= ?")
        params.append(criteria.date_from)
    if criteria.date_to:
        conditions.append("start_time <= ?")
        params.append(criteria.date_to)
    if criteria.duration_min is not None:
        conditions.append("duration >= ?")
        params.append(criteria.duration_min)
    if criteria.duration_max is not None:
        conditions.append("duration <= ?")
        params.append(criteria.duration_max)
    if criteria.search:
        pattern = _contains(criteria.search)
        conditions.append(f"({_like('title')} OR {_like('full_title')} OR {_like('error_message')})")
        params.extend([pattern, pattern, pattern])
    if criteria.tags:
        # Containment against the serialised JSON array.
        conditions.append("(" + " OR ".join(_like("tags") for _ in criteria.tags) + ")")
        params.extend(_contains(json.dumps(tag)) for tag in criteria.tags)
    if criteria.has_retries is True:
        conditions.append("retries > 0")
    elif criteria.has_retries is False:
        conditions.append("retries = 0")
    if criteria.has_screenshots is True:
        conditions.append("screenshot_path IS NOT NULL")
    elif criteria.has_screenshots is False:
        conditions.append("screenshot_path IS NULL")

    return conditions, params


def _where(conditions):
    return f"WHERE {' AND '.join(conditions)}" if conditions else ""


def build_result_query(criteria: ResultFilter, sort: Optional[SortSpec] = None,
                       limit: int = DEFAULT_LIMIT, offset: int = 0):
    sort = sort or SortSpec()
    conditions, params = result_conditions(criteria)
    sql = f"SELECT * FROM test_results {_where(conditions)} {sort.order_by()} LIMIT ? OFFSET ?"
    return sql, params + [limit, offset]


def build_result_count(criteria: ResultFilter):
    conditions, params = result_conditions(criteria)
    return f"SELECT COUNT(*) FROM test_results {_where(conditions)}", params


def run_conditions(criteria: RunFilter) -> Tuple[List[str], List[Any]]:
    conditions: List[str] = []
    params: List[Any] = []

    if criteria.statuses:
        _in("status", list(criteria.statuses), conditions, params)
    if criteria.browsers:
        _in("browser_name", list(criteria.browsers), conditions, params)
    if criteria.date_from:
        conditions.append("start_time >= ?")
        params.append(criteria.date_from)
    if criteria.date_to:
        conditions.append("start_time <= ?")
        params.append(criteria.date_to)
    if criteria.search:
        pattern = _contains(criteria.search)
        conditions.append(
            f"({_like('browser_name')} OR {_like('spec_files')} OR {_like('runner_version')})"
        )
        params.extend([pattern, pattern, pattern])

    return conditions, params


def build_run_query(criteria: RunFilter, limit: int = DEFAULT_LIMIT, offset: int = 0):
    conditions, params = run_conditions(criteria)
    sql = (
        f"SELECT * FROM test_runs {_where(conditions)} "
        "ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?"
    )
    return sql, params + [limit, offset]


def build_run_count(criteria: RunFilter):
    conditions, params = run_conditions(criteria)
    return f"SELECT COUNT(*) FROM test_runs {_where(conditions)}", params


# --- Query-string parsing ---

def _split(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = []
        for item in value:
            items.extend(_split(item))
        return items
    return [part.strip() for part in str(value).split(",") if part.strip()]


def parse_int(query, name, default=None, minimum=None, maximum=None):
    raw = query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{name} must be <= {maximum}")
    return value


def parse_float(query, name, default=None, minimum=None, maximum=None):
    raw = query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{name} must be <= {maximum}")
    return value


def parse_bool(query, name):
    raw = query.get(name)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValidationError(f"{name} must be true or false")


def parse_date(query, name, end_of_day=False):
    raw = query.get(name)
    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    # A bare date covers the whole day when used as an upper bound.
    if end_of_day and len(text) == 10:
        text += "T23:59:59.999"
    return to_iso(text)


def parse_pagination(query, default_limit=DEFAULT_LIMIT):
    limit = parse_int(query, "limit", default_limit, minimum=1, maximum=MAX_LIMIT)
    offset = parse_int(query, "offset", 0, minimum=0)
    return limit, offset


def parse_sort(query) -> SortSpec:
    return SortSpec(
        key=query.get("sortBy") or "startTime",
        order=(query.get("sortOrder") or "desc").lower(),
    ).validate()


def parse_result_filter(query) -> ResultFilter:
    """Build a ResultFilter from REST query parameters."""
    return ResultFilter(
        run_id=query.get("runId") or None,
        states=_split(query.get("status")),
        files=_split(query.get("file")),
        browsers=_split(query.get("browser")),
        date_from=parse_date(query, "dateFrom"),
        date_to=parse_date(query, "dateTo", end_of_day=True),
        duration_min=parse_int(query, "durationMin", minimum=0),
        duration_max=parse_int(query, "durationMax", minimum=0),
        search=(query.get("search") or "").strip() or None,
        tags=_split(query.get("tags")),
        has_retries=parse_bool(query, "retries"),
        has_screenshots=parse_bool(query, "hasScreenshots"),
    ).validate()


def parse_run_filter(query) -> RunFilter:
    """Build a RunFilter from REST query parameters."""
    return RunFilter(
        statuses=_split(query.get("status")),
        browsers=_split(query.get("browser")),
        date_from=parse_date(query, "dateFrom"),
        date_to=parse_date(query, "dateTo", end_of_day=True),
        search=(query.get("search") or "").strip() or None,
    ).validate()


def result_filter_from_dict(data) -> ResultFilter:
    """Build a ResultFilter from a JSON object (saved presets, websocket requests)."""
    if not isinstance(data, dict):
        raise ValidationError("filters must be an object")
    query = {}
    for key, value in data.items():
        if isinstance(value, (list, tuple)):
            query[key] = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            query[key] = "true" if value else "false"
        elif value is not None:
            query[key] = value
    return parse_result_filter(query)


# --- Faceting ---

async def unique_values(database, field_name: str, limit: int = 100):
    """Distinct values and counts of a facet column, most frequent first."""
    column = FACETS.get(field_name)
    if column is None:
        raise ValidationError(f"Field must be one of: {', '.join(FACETS)}")
    rows = await database.fetch_all(
        f"""
        SELECT {column} AS value, COUNT(*) AS count
        FROM test_results
        WHERE {column} IS NOT NULL
        GROUP BY {column}
        ORDER BY count DESC, value ASC
        LIMIT ?
        """,
        (limit,),
    )
    return [{"value": row["value"], "count": row["count"]} for row in rows]

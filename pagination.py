"""
Page/limit/sort and date-range handling for list endpoints.

Results are always sorted by an explicit field with _id as the final tie
breaker, so repeated calls with the same filters return the same page.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import Query
from pymongo.collection import Collection

from exceptions import ValidationFailed

MAX_LIMIT = 100


@dataclass
class PageParams:
    page: int = 1
    limit: int = 10
    sort_by: Optional[str] = None
    sort_order: str = "desc"

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_LIMIT),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
) -> PageParams:
    return PageParams(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "current": page,
        "pages": pages,
        "total": total,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }


def build_sort(params: PageParams, default: Sequence[Tuple[str, int]],
               allowed: Optional[Sequence[str]] = None) -> List[Tuple[str, int]]:
    if params.sort_by and (allowed is None or params.sort_by in allowed):
        direction = 1 if params.sort_order == "asc" else -1
        sort = [(params.sort_by, direction)]
    else:
        sort = list(default)
    if not any(key == "_id" for key, _ in sort):
        sort.append(("_id", sort[-1][1] if sort else -1))
    return sort


def paginate(collection: Collection, query: Dict[str, Any], params: PageParams,
             default_sort: Sequence[Tuple[str, int]] = (("createdAt", -1),),
             allowed_sorts: Optional[Sequence[str]] = None,
             projection: Optional[Dict[str, int]] = None) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    total = collection.count_documents(query)
    cursor = (
        collection.find(query, projection)
        .sort(build_sort(params, default_sort, allowed_sorts))
        .skip(params.skip)
        .limit(params.limit)
    )
    return list(cursor), pagination_meta(total, params.page, params.limit)


# -------------------- Date filters -------------------- #

def parse_date(value: str, field: str = "date") -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationFailed.field(field, f"Invalid {field}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def day_bounds(day: datetime) -> Tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


def date_filter(date: Optional[str] = None, start_date: Optional[str] = None,
                end_date: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """A single day wins over a range; a range needs both ends."""
    if date:
        start, end = day_bounds(parse_date(date))
        return {"$gte": start, "$lt": end}
    if start_date and end_date:
        return {"$gte": parse_date(start_date, "startDate"), "$lte": parse_date(end_date, "endDate")}
    return None

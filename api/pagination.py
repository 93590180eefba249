"""
Page-number pagination helpers.

List endpoints take ?page=N&limit=M and return a pagination object next to the
data:

    {"currentPage": 2, "totalPages": 5, "totalCount": 93, "limit": 20,
     "hasNextPage": true, "hasPreviousPage": true}
"""

import math
from typing import Any, Optional

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def clamp_page(page: Any) -> int:
    """Parse a page number; anything invalid or below 1 becomes 1."""
    try:
        value = int(page)
    except (TypeError, ValueError):
        return 1
    return max(1, value)


def clamp_limit(limit: Any, default: int = DEFAULT_PAGE_SIZE, maximum: int = MAX_PAGE_SIZE) -> int:
    """Parse a page size into 1..maximum, falling back to default when invalid."""
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return default
    if value < 1:
        return default
    return min(value, maximum)


def offset_for(page: int, limit: int) -> int:
    return (page - 1) * limit


def build_pagination(page: int, limit: int, total_count: Optional[int]) -> dict:
    """Build the pagination object for a page of results."""
    total_count = int(total_count or 0)
    total_pages = math.ceil(total_count / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalCount": total_count,
        "limit": limit,
        "hasNextPage": page < total_pages,
        "hasPreviousPage": page > 1,
    }

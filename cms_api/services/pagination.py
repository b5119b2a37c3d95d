"""
Пагинация списков (limit/offset)
"""
import math


def build_pagination(total: int, limit: int, offset: int) -> dict:
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "page": offset // limit + 1 if limit else 1,
        "totalPages": math.ceil(total / limit) if limit else 0,
        "hasNext": offset + limit < total,
        "hasPrev": offset > 0
    }

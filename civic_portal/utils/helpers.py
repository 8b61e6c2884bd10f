"""Request helpers shared by the routers"""

import math
import re
from typing import Dict, List, Optional

_TAGS = re.compile(r"[<>]")
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLERS = re.compile(r"on\w+=", re.IGNORECASE)


def sanitize_input(value: Optional[str]) -> Optional[str]:
    """Strip markup fragments from free-text input"""
    if not isinstance(value, str):
        return value
    value = _TAGS.sub("", value.strip())
    value = _JS_PROTOCOL.sub("", value)
    return _EVENT_HANDLERS.sub("", value)


def paginate(items: List, page: int = 1, limit: int = 10) -> Dict:
    offset = (page - 1) * limit
    return {
        "data": items[offset:offset + limit],
        "pagination": {
            "currentPage": page,
            "totalPages": math.ceil(len(items) / limit),
            "totalItems": len(items),
            "itemsPerPage": limit,
            "hasNext": offset + limit < len(items),
            "hasPrevious": page > 1,
        },
    }


def success_response(data, message: str) -> Dict:
    return {"success": True, "message": message, "data": data}

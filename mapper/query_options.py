from typing import Any, Dict, Mapping, Optional, Tuple

# Keys that steer how a query runs rather than what it matches
OPTION_KEYS = ("fields", "skip", "limit", "sort", "hint", "snapshot", "timeout")


def split_options(conditions: Optional[Mapping[str, Any]] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Separates query options from filter criteria.

    Returns (filter, options). Every recognized option key present in
    `conditions` is moved to `options` with its value untouched, even when the
    value is falsy (`skip=0`, `fields=[]`). A missing "fields" means all fields.
    The input mapping is left unchanged.
    """
    query_filter: Dict[str, Any] = {}
    options: Dict[str, Any] = {}
    for key, value in (conditions or {}).items():
        if key in OPTION_KEYS:
            options[key] = value
        else:
            query_filter[key] = value
    return query_filter, options

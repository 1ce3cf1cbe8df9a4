"""Limit/offset normalisation shared by the paginated /iam listings."""
DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def _as_int(raw, default):
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError('limit/offset must be int')


def normalize_pagination(limit_raw, offset_raw):
    """Return (limit, offset) with limit clamped to 1..MAX_LIMIT and offset >= 0."""
    limit = max(1, min(_as_int(limit_raw, DEFAULT_LIMIT), MAX_LIMIT))
    offset = max(0, _as_int(offset_raw, 0))
    return limit, offset

from __future__ import annotations
from typing import Iterable, Optional, Tuple
from flask import request, abort, make_response
from pgben.config.pagination import normalize_pagination
import hashlib


def apply_pagination(q) -> Tuple[object, int, int, int]:
    """Apply limit/offset query args to a SQLAlchemy Query; returns (paged_query, total, limit, offset)."""
    try:
        limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        abort(400, description=str(e))
    total = q.count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable, total: int, limit: int, offset: int, seed_extra: Optional[str] = '') -> str:
    seed = f"{list(ids)}|{total}|{limit}|{offset}|{seed_extra or ''}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def build_list_payload(rows: list, total: int, limit: int, offset: int):
    return {
        'data': rows,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(rows)
        }
    }


def make_list_response(rows: list, total: int, limit: int, offset: int, seed_extra: Optional[str] = ''):
    """List response with an ETag; answers 304 when If-None-Match matches."""
    etag = compute_etag([r.get('id') for r in rows], total, limit, offset, seed_extra)
    inm = request.headers.get('If-None-Match')
    if inm and inm.strip('"') == etag:
        resp = make_response('', 304)
    else:
        resp = make_response(build_list_payload(rows, total, limit, offset))
    resp.headers['ETag'] = etag
    return resp


__all__ = ['apply_pagination', 'compute_etag', 'build_list_payload', 'make_list_response']

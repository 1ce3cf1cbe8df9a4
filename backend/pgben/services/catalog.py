from __future__ import annotations
"""Permission catalog snapshot and segment-based wildcard matching.

Codes follow ``modulo.recurso.operacao``. A ``*`` segment stands for one or more
whole segments, so ``cidadao.*`` covers ``cidadao.documento.ler`` and ``*.ler``
covers any code ending in ``ler``. Matching never uses regular expressions.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pgben.services.errors import NotFound, ValidationError
from pgben.services.scope import ScopeType

WILDCARD = '*'


def _segment_ok(seg: str) -> bool:
    if seg == WILDCARD:
        return True
    return bool(seg) and all(('0' <= c <= '9') or ('a' <= c <= 'z') for c in seg)


def validate_permission_name(name) -> str:
    """Return name unchanged or raise ValidationError for a malformed code."""
    if not isinstance(name, str) or not name:
        raise ValidationError('Permission name must be a non-empty string')
    segments = name.split('.')
    bad = [s for s in segments if not _segment_ok(s)]
    if bad:
        raise ValidationError(
            f"Invalid permission name '{name}': segments must be [a-z0-9]+ or a lone '*'"
        )
    if segments == [WILDCARD]:
        raise ValidationError(f"Invalid permission name '{name}': use '*.*' for the global wildcard")
    return name


def is_composite(name: str) -> bool:
    return WILDCARD in name.split('.')


def specificity(pattern: str) -> int:
    """Number of literal segments; an exact code outranks every wildcard matching it."""
    return sum(1 for s in pattern.split('.') if s != WILDCARD)


def _match_segments(pat: Tuple[str, ...], code: Tuple[str, ...]) -> bool:
    if not pat:
        return not code
    head = pat[0]
    if head == WILDCARD:
        # consume 1..n segments
        for i in range(1, len(code) + 1):
            if _match_segments(pat[1:], code[i:]):
                return True
        return False
    return bool(code) and code[0] == head and _match_segments(pat[1:], code[1:])


def matches(pattern: str, code: str) -> bool:
    if pattern == code:
        return True
    if WILDCARD not in pattern:
        return False
    return _match_segments(tuple(pattern.split('.')), tuple(code.split('.')))


@dataclass(frozen=True)
class PermissionDef:
    name: str
    description: str = ''
    default_scope: ScopeType = ScopeType.GLOBAL

    @property
    def is_composite(self) -> bool:
        return is_composite(self.name)


class Catalog:
    """Immutable, validated registry of permission definitions."""

    def __init__(self, defs: Iterable[PermissionDef]):
        by_name: Dict[str, PermissionDef] = {}
        for d in defs:
            validate_permission_name(d.name)
            if d.name in by_name:
                raise ValidationError(f"Duplicate permission name '{d.name}'")
            by_name[d.name] = d
        self._by_name = by_name
        self._leaves: Tuple[str, ...] = tuple(sorted(n for n, d in by_name.items() if not d.is_composite))

    @classmethod
    def from_names(cls, names: Iterable[str]) -> 'Catalog':
        return cls(PermissionDef(name=n) for n in names)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def names(self) -> List[str]:
        return sorted(self._by_name)

    @property
    def leaves(self) -> Tuple[str, ...]:
        return self._leaves

    def get(self, name: str) -> Optional[PermissionDef]:
        return self._by_name.get(name)

    def require(self, name: str) -> PermissionDef:
        d = self._by_name.get(name)
        if d is None:
            raise NotFound(f"Unknown permission '{name}'")
        return d

    def default_scope(self, name: str) -> ScopeType:
        d = self._by_name.get(name)
        return d.default_scope if d else ScopeType.GLOBAL

    def expand(self, pattern: str) -> FrozenSet[str]:
        """All leaf codes the pattern covers (the pattern itself when it is a leaf)."""
        if not is_composite(pattern):
            return frozenset([pattern]) if pattern in self._by_name else frozenset()
        return frozenset(c for c in self._leaves if matches(pattern, c))


__all__ = [
    'WILDCARD', 'validate_permission_name', 'is_composite', 'specificity', 'matches',
    'PermissionDef', 'Catalog',
]

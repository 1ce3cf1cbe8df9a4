from __future__ import annotations
"""Scope resolution: does a resource fall inside the boundary a permission was granted for.

GLOBAL grants cover every resource, UNIT grants cover the granted unit and its
descendants in the organisational tree, SELF grants cover resources owned by the
requesting user.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional, Tuple

from pgben.services.errors import ValidationError


class ScopeType(str, Enum):
    GLOBAL = 'GLOBAL'
    UNIT = 'UNIT'
    SELF = 'SELF'

    @classmethod
    def parse(cls, raw) -> 'ScopeType':
        if isinstance(raw, ScopeType):
            return raw
        try:
            return cls(str(raw).upper())
        except ValueError:
            raise ValidationError(f"Invalid scope_type '{raw}' (expected GLOBAL, UNIT or SELF)")


@dataclass(frozen=True)
class ResourceRef:
    """Target of a scoped check: the unit a record belongs to and the user who owns it."""
    unit_id: Optional[int] = None
    owner_id: Optional[int] = None


@dataclass(frozen=True)
class UnitTree:
    parents: Mapping[int, Optional[int]] = field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[int, Optional[int]]]) -> 'UnitTree':
        return cls(parents=dict(pairs))

    def ancestors(self, unit_id: int):
        """Yield unit_id followed by each ancestor up to the root."""
        seen = set()
        current: Optional[int] = unit_id
        while current is not None and current not in seen:
            seen.add(current)
            yield current
            current = self.parents.get(current)

    def is_within(self, unit_id: Optional[int], ancestor_id: Optional[int]) -> bool:
        if unit_id is None or ancestor_id is None:
            return False
        return any(u == ancestor_id for u in self.ancestors(unit_id))


EMPTY_TREE = UnitTree()


def is_in_scope(user_id: int, scope_type: ScopeType, scope_id: Optional[int],
                resource: ResourceRef, units: UnitTree = EMPTY_TREE) -> bool:
    if scope_type == ScopeType.GLOBAL:
        return True
    if scope_type == ScopeType.UNIT:
        return units.is_within(resource.unit_id, scope_id)
    if scope_type == ScopeType.SELF:
        return resource.owner_id is not None and resource.owner_id == user_id
    return False


__all__ = ['ScopeType', 'ResourceRef', 'UnitTree', 'EMPTY_TREE', 'is_in_scope']

"""
Set arithmetic used to decide which membership edges to add or remove.

Everything here is a pure function over id sets; nothing touches the remote service.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Set


@dataclass(frozen=True)
class MembershipDelta:
    to_add: FrozenSet[str] = field(default_factory=frozenset)
    to_remove: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def diff(desired: Iterable[str], actual: Iterable[str],
         protected: Iterable[str] = ()) -> MembershipDelta:
    """
    Compute the minimal add/remove sets between desired and actual membership.

    Args:
        desired: Ids that should be members
        actual: Ids currently listed as members
        protected: Ids that must never be removed

    Returns:
        MembershipDelta where to_add = desired - actual and
        to_remove = (actual - desired) - protected
    """
    desired_set = frozenset(desired)
    actual_set = frozenset(actual)
    protected_set = frozenset(protected)

    return MembershipDelta(
        to_add=desired_set - actual_set,
        to_remove=(actual_set - desired_set) - protected_set,
    )


def sweep(actual: Iterable[str], protected: Iterable[str] = ()) -> FrozenSet[str]:
    """Return every observed member that is not protected."""
    return frozenset(actual) - frozenset(protected)


def sets_differ(first: Iterable[str], second: Iterable[str]) -> bool:
    """Order-independent inequality check between two id collections."""
    return set(first) != set(second)


def flatten_ids(records: Iterable[Dict[str, Any]], key: str = 'id') -> Set[str]:
    """
    Collapse remote member records into a set of id strings.

    Numeric ids are converted to strings.

    Raises:
        ValueError: If a record is not a mapping or has no usable id
    """
    ids = set()
    for record in records:
        if not isinstance(record, dict):
            raise ValueError(f"member record is not a mapping: {record!r}")
        value = record.get(key)
        if value is None or value == '':
            raise ValueError(f"member record has no '{key}': {record!r}")
        ids.add(str(value))
    return ids

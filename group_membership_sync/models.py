"""
Membership records exchanged between the configuration layer, the reconciler and the clients.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional


class MemberKind(str, Enum):
    USER = 'user'
    GROUP = 'group'


@dataclass(frozen=True)
class MembershipEdge:
    """A single (parent group, member, kind) relation."""
    group_id: str
    member_id: str
    kind: MemberKind


def _id_set(values: Optional[Iterable[Any]]) -> FrozenSet[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        return frozenset([values])
    return frozenset(str(value) for value in values)


@dataclass(frozen=True)
class DesiredState:
    """
    Membership declared for one reconciliation call.

    Protected users are never removed, whether or not they appear in user_ids.
    Protected groups are empty unless configured.
    """
    target_group_id: str
    user_ids: FrozenSet[str] = field(default_factory=frozenset)
    group_ids: FrozenSet[str] = field(default_factory=frozenset)
    delete_protected_user_ids: FrozenSet[str] = field(default_factory=frozenset)
    delete_protected_group_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'DesiredState':
        """
        Build a desired state from an input record.

        Args:
            record: Mapping with target_group_id and optional id lists

        Returns:
            DesiredState with every id list deduplicated

        Raises:
            ValueError: If target_group_id is missing or empty
        """
        target_group_id = record.get('target_group_id')
        if target_group_id is None or str(target_group_id) == '':
            raise ValueError("target_group_id is required")

        return cls(
            target_group_id=str(target_group_id),
            user_ids=_id_set(record.get('user_ids')),
            group_ids=_id_set(record.get('group_ids')),
            delete_protected_user_ids=_id_set(record.get('delete_protected_user_ids')),
            delete_protected_group_ids=_id_set(record.get('delete_protected_group_ids')),
        )

    def to_record(self) -> Dict[str, Any]:
        record = {
            'target_group_id': self.target_group_id,
            'user_ids': sorted(self.user_ids),
            'delete_protected_user_ids': sorted(self.delete_protected_user_ids),
            'group_ids': sorted(self.group_ids),
        }
        if self.delete_protected_group_ids:
            record['delete_protected_group_ids'] = sorted(self.delete_protected_group_ids)
        return record


@dataclass(frozen=True)
class ObservedState:
    """Membership as freshly listed from the remote service."""
    target_group_id: str
    user_ids: FrozenSet[str] = field(default_factory=frozenset)
    group_ids: FrozenSet[str] = field(default_factory=frozenset)

    def edges(self):
        for user_id in sorted(self.user_ids):
            yield MembershipEdge(self.target_group_id, user_id, MemberKind.USER)
        for group_id in sorted(self.group_ids):
            yield MembershipEdge(self.target_group_id, group_id, MemberKind.GROUP)

    @property
    def is_empty(self) -> bool:
        return not self.user_ids and not self.group_ids

"""
Membership reconciliation.

This module contains the create/read/update/delete cycles that bring a remote
group's membership in line with a DesiredState. Every remote call is issued in
order and the first failure aborts the operation; nothing already applied is
rolled back, so re-running the same operation is the recovery path.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from .clients.base import MembershipClient
from .diff import diff, sweep, sets_differ
from .errors import MembershipError, ReconcileError
from .logging_setup import audit_logger
from .models import DesiredState, MemberKind, ObservedState
from .projector import StateProjector

logger = logging.getLogger(__name__)

FULL_SWEEP = 'full_sweep'
DIFF = 'diff'
STRATEGIES = (FULL_SWEEP, DIFF)


@dataclass(frozen=True)
class MembershipPlan:
    """Intended changes for one group, computed without touching membership."""
    target_group_id: str
    action: str
    users_to_add: FrozenSet[str] = field(default_factory=frozenset)
    users_to_remove: FrozenSet[str] = field(default_factory=frozenset)
    groups_to_add: FrozenSet[str] = field(default_factory=frozenset)
    groups_to_remove: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def has_changes(self) -> bool:
        return bool(self.users_to_add or self.users_to_remove
                    or self.groups_to_add or self.groups_to_remove)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'target_group_id': self.target_group_id,
            'action': self.action,
            'users_to_add': sorted(self.users_to_add),
            'users_to_remove': sorted(self.users_to_remove),
            'groups_to_add': sorted(self.groups_to_add),
            'groups_to_remove': sorted(self.groups_to_remove),
        }


class MembershipReconciler:
    """
    Applies desired membership to a remote group through a MembershipClient.

    The full_sweep strategy removes every unprotected user and re-adds the desired
    ones; the diff strategy only touches users whose membership must change. Both
    leave the same final membership. Groups are only touched when the desired and
    observed group id sets differ.
    """

    def __init__(self, client: MembershipClient, strategy: str = FULL_SWEEP):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown reconcile strategy '{strategy}', expected one of {STRATEGIES}")
        self.client = client
        self.strategy = strategy
        self.projector = StateProjector(client)

    def _run(self, operation: str, group_id: str, func: Callable, *args):
        audit_logger.log_operation(operation, group_id, f"strategy={self.strategy}")
        try:
            return func(*args)
        except MembershipError as e:
            logger.error(f"{operation.capitalize()} of group {group_id} aborted: {e}")
            raise ReconcileError(operation, group_id, e) from e

    def _apply(self, action: str, kind: MemberKind, group_id: str, member_ids: Iterable[str],
               call: Callable[[str, str], None]) -> int:
        count = 0
        for member_id in sorted(member_ids):
            try:
                call(group_id, member_id)
            except MembershipError:
                audit_logger.log_membership_change(action, group_id, member_id, kind.value, False)
                raise
            audit_logger.log_membership_change(action, group_id, member_id, kind.value, True)
            count += 1
        if count:
            logger.info(f"Group {group_id}: {action} {count} {kind.value} member(s)")
        return count

    def _add_users(self, group_id: str, user_ids: Iterable[str]) -> int:
        return self._apply('add', MemberKind.USER, group_id, user_ids, self.client.add_user_to_group)

    def _remove_users(self, group_id: str, user_ids: Iterable[str]) -> int:
        return self._apply('remove', MemberKind.USER, group_id, user_ids,
                           self.client.remove_user_from_group)

    def _add_groups(self, group_id: str, group_ids: Iterable[str]) -> int:
        return self._apply('add', MemberKind.GROUP, group_id, group_ids,
                           self.client.add_group_to_group)

    def _remove_groups(self, group_id: str, group_ids: Iterable[str]) -> int:
        return self._apply('remove', MemberKind.GROUP, group_id, group_ids,
                           self.client.remove_group_from_group)

    def create(self, desired: DesiredState) -> ObservedState:
        """
        Add every desired user and group to a group that is assumed to be empty.

        Returns:
            Observed state after the additions
        """
        group_id = desired.target_group_id

        def _create():
            self._add_users(group_id, desired.user_ids)
            self._add_groups(group_id, desired.group_ids)
            return self._read(group_id)

        return self._run('create', group_id, _create)

    def _read(self, group_id: str) -> ObservedState:
        return self.projector.project_observed(group_id)

    def read(self, group_id: str) -> ObservedState:
        """List the group's current membership. Issues no mutations."""
        return self._run('read', group_id, self._read, group_id)

    def import_state(self, group_id: str) -> ObservedState:
        """Adopt an existing group by id alone and return its full membership."""
        return self._run('import', group_id, self._read, group_id)

    def update(self, desired: DesiredState) -> ObservedState:
        """
        Converge the group's membership on the desired state.

        Desired users are validated first, so an unknown id aborts the update before
        any membership changes. Users are then removed (never protected ones), member
        groups are replaced only if the group id sets differ, and finally desired
        members are added.

        Returns:
            Observed state after the update
        """
        group_id = desired.target_group_id

        def _update():
            self.projector.validate_users_exist(desired.user_ids)
            if self.strategy == FULL_SWEEP:
                self._update_full_sweep(desired)
            else:
                self._update_diff(desired)
            return self._read(group_id)

        return self._run('update', group_id, _update)

    def _update_full_sweep(self, desired: DesiredState) -> None:
        group_id = desired.target_group_id

        actual_users = self.client.list_group_users(group_id)
        kept_users = frozenset(actual_users) & desired.delete_protected_user_ids
        self._remove_users(group_id, sweep(actual_users, desired.delete_protected_user_ids))

        actual_groups = self.client.list_group_groups(group_id)
        groups_changed = sets_differ(actual_groups, desired.group_ids)
        kept_groups = frozenset(actual_groups) & desired.delete_protected_group_ids
        if groups_changed:
            self._remove_groups(group_id, sweep(actual_groups, desired.delete_protected_group_ids))
        else:
            logger.debug(f"Group {group_id}: member groups already match, leaving them untouched")

        self._add_users(group_id, desired.user_ids - kept_users)

        if groups_changed:
            self._add_groups(group_id, desired.group_ids - kept_groups)

    def _update_diff(self, desired: DesiredState) -> None:
        group_id = desired.target_group_id

        actual_users = self.client.list_group_users(group_id)
        user_delta = diff(desired.user_ids, actual_users, desired.delete_protected_user_ids)
        self._remove_users(group_id, user_delta.to_remove)

        actual_groups = self.client.list_group_groups(group_id)
        groups_changed = sets_differ(actual_groups, desired.group_ids)
        group_delta = None
        if groups_changed:
            group_delta = diff(desired.group_ids, actual_groups, desired.delete_protected_group_ids)
            self._remove_groups(group_id, group_delta.to_remove)
        else:
            logger.debug(f"Group {group_id}: member groups already match, leaving them untouched")

        self._add_users(group_id, user_delta.to_add)

        if group_delta is not None:
            self._add_groups(group_id, group_delta.to_add)

    def delete(self, desired: DesiredState) -> ObservedState:
        """
        Remove every unprotected user and every member group.

        Returns:
            Observed state after the removals; protected users are still listed
        """
        group_id = desired.target_group_id

        def _delete():
            actual_users = self.client.list_group_users(group_id)
            self._remove_users(group_id, sweep(actual_users, desired.delete_protected_user_ids))

            actual_groups = self.client.list_group_groups(group_id)
            self._remove_groups(group_id, sweep(actual_groups, desired.delete_protected_group_ids))

            return self._read(group_id)

        return self._run('delete', group_id, _delete)

    def plan(self, desired: DesiredState,
             prior_record: Optional[Dict[str, Any]] = None) -> MembershipPlan:
        """
        Work out what applying the desired state would change, without mutating anything.

        Desired users are fetched whenever user_ids differs from the previously applied
        record (or there is none), so an unknown id fails the plan.

        Args:
            desired: Desired membership
            prior_record: Output record stored after the last apply, if any

        Returns:
            MembershipPlan with action 'create', 'update' or 'noop'
        """
        group_id = desired.target_group_id

        def _plan():
            if prior_record is None:
                self.projector.validate_users_exist(desired.user_ids)
                return MembershipPlan(
                    target_group_id=group_id,
                    action='create',
                    users_to_add=desired.user_ids,
                    groups_to_add=desired.group_ids,
                )

            prior_users = frozenset(prior_record.get('user_ids') or ())
            prior_groups = frozenset(prior_record.get('group_ids') or ())
            if prior_users != desired.user_ids:
                self.projector.validate_users_exist(desired.user_ids)

            user_delta = diff(desired.user_ids, prior_users, desired.delete_protected_user_ids)
            group_delta = diff(desired.group_ids, prior_groups, desired.delete_protected_group_ids)
            if not sets_differ(prior_groups, desired.group_ids):
                group_delta = diff((), ())

            result = MembershipPlan(
                target_group_id=group_id,
                action='update',
                users_to_add=user_delta.to_add,
                users_to_remove=user_delta.to_remove,
                groups_to_add=group_delta.to_add,
                groups_to_remove=group_delta.to_remove,
            )
            if not result.has_changes:
                return MembershipPlan(target_group_id=group_id, action='noop')
            return result

        return self._run('plan', group_id, _plan)

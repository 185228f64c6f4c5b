"""
Projection of remote membership into observed state, plus existence checks on desired input.
"""

import logging
from typing import Any, Dict, Iterable

from .clients.base import MembershipClient
from .errors import NotFound, RemoteError
from .models import ObservedState

logger = logging.getLogger(__name__)


class StateProjector:
    """Reads a group's membership and validates desired users against the remote service."""

    def __init__(self, client: MembershipClient):
        self.client = client

    def validate_users_exist(self, user_ids: Iterable[str]) -> None:
        """
        Fetch every desired user, failing on the first one that cannot be read.

        Args:
            user_ids: Desired user ids

        Raises:
            NotFound: If a user does not exist (the message names the id)
            RemoteError: If a lookup fails for any other reason
        """
        user_ids = sorted(set(user_ids))
        for user_id in user_ids:
            try:
                self.client.get_user(user_id)
            except NotFound:
                logger.error(f"Desired user {user_id} does not exist")
                raise
            except RemoteError as e:
                raise RemoteError(f"error fetching user with id {user_id}: {e}",
                                  status_code=e.status_code) from e
        logger.debug(f"Validated {len(user_ids)} desired users")

    def project_observed(self, group_id: str) -> ObservedState:
        """List the group's user and group members as they are right now."""
        user_ids = self.client.list_group_users(group_id)
        group_ids = self.client.list_group_groups(group_id)
        logger.debug(f"Group {group_id} has {len(user_ids)} user members "
                     f"and {len(group_ids)} group members")
        return ObservedState(
            target_group_id=group_id,
            user_ids=frozenset(user_ids),
            group_ids=frozenset(group_ids),
        )

    @staticmethod
    def to_record(observed: ObservedState,
                  delete_protected_user_ids: Iterable[str] = (),
                  delete_protected_group_ids: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Render observed state in the external output shape.

        Protected ids are passed through from the caller, never derived from the listing.
        """
        record = {
            'target_group_id': observed.target_group_id,
            'user_ids': sorted(observed.user_ids),
            'delete_protected_user_ids': sorted(set(delete_protected_user_ids)),
            'group_ids': sorted(observed.group_ids),
        }
        if delete_protected_group_ids:
            record['delete_protected_group_ids'] = sorted(set(delete_protected_group_ids))
        return record

"""
Base membership client interface.

This module defines the abstract base class every remote directory integration
must implement. The reconciler only talks to the service through these methods.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)


class MembershipClient(ABC):
    """
    Abstract capability over a remote directory service.

    Listings must be complete: implementations either return every member across
    all pages or raise TruncatedListingError. Removal of a member that is not
    currently listed is allowed to fail; callers only remove listed members.
    """

    name = 'membership-client'

    @abstractmethod
    def list_group_users(self, group_id: str) -> Set[str]:
        """
        List the ids of users that are direct members of a group.

        Raises:
            RemoteError: If the listing fails or is truncated
        """
        pass

    @abstractmethod
    def list_group_groups(self, group_id: str) -> Set[str]:
        """
        List the ids of groups that are direct members of a group.

        Raises:
            RemoteError: If the listing fails or is truncated
        """
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Dict[str, Any]:
        """
        Fetch a user record by id.

        Raises:
            NotFound: If no such user exists
            RemoteError: For any other failure
        """
        pass

    @abstractmethod
    def add_user_to_group(self, group_id: str, user_id: str) -> None:
        pass

    @abstractmethod
    def add_group_to_group(self, group_id: str, member_group_id: str) -> None:
        pass

    @abstractmethod
    def remove_user_from_group(self, group_id: str, user_id: str) -> None:
        pass

    @abstractmethod
    def remove_group_from_group(self, group_id: str, member_group_id: str) -> None:
        pass

    def connect(self) -> bool:
        """Open any connection or session the client needs. Default is a no-op."""
        return True

    def close(self) -> None:
        """Release connections held by the client."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

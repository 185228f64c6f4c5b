"""
Group Membership Sync - Reconcile declared group membership against a remote directory service.

This package keeps the users and sub-groups of a directory group in line with a
declared desired state, never removing members listed as delete-protected.
"""

__version__ = "1.0.0"
__author__ = "Group Membership Sync Team"

"""
Remote directory clients.

Each module in this package provides one MembershipClient subclass; the
orchestrator selects the module named by the service.type setting.
"""

from .base import MembershipClient

__all__ = ['MembershipClient']

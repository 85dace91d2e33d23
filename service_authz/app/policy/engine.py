"""
Policy evaluation engine for the authorization service.
"""

from typing import Callable, List, Optional, TypeVar
from dataclasses import dataclass, field

from ..errors import InvalidInputError
from .models import Group, Permission, PolicyEvaluationResult

T = TypeVar("T")


@dataclass
class Policy:
    """The entire policy: every permission and every group in the system.

    A policy is the single source of truth regarding which user has which
    permission. It is a pure snapshot and never talks to the store.
    """
    permissions: List[Permission] = field(default_factory=list)
    groups: List[Group] = field(default_factory=list)
    
    def evaluate(self, user: str) -> PolicyEvaluationResult:
        """Evaluate the groups and permissions of ``user``.

        An error raised while evaluating a single group or permission counts
        as a non-match for that element; it does not abort the evaluation.
        """
        if not user:
            raise InvalidInputError("user is empty")
        
        groups = [
            group.name for group in self.groups
            if _satisfied(group.evaluate, user)
        ]
        
        permissions = [
            permission.name for permission in self.permissions
            if _satisfied(permission.evaluate, groups)
        ]
        
        return PolicyEvaluationResult(groups=groups, permissions=permissions)
    
    def is_in_group(self, user: str, group: str) -> bool:
        """Check whether ``user`` is a member of the group named ``group``."""
        if not group:
            raise InvalidInputError("group is empty")
        
        return group in self.evaluate(user).groups
    
    def has_permission(self, user: str, permission: str) -> bool:
        """Check whether ``user`` has been granted the permission named ``permission``."""
        if not permission:
            raise InvalidInputError("permission is empty")
        
        return permission in self.evaluate(user).permissions
    
    def get_group(self, name: str) -> Optional[Group]:
        """Get a group by name."""
        for group in self.groups:
            if group.name == name:
                return group
        return None
    
    def get_permission(self, name: str) -> Optional[Permission]:
        """Get a permission by name."""
        for permission in self.permissions:
            if permission.name == name:
                return permission
        return None


def _satisfied(evaluate: Callable[[T], bool], value: T) -> bool:
    try:
        return evaluate(value)
    except InvalidInputError:
        # fail closed
        return False

"""
Policy data models for the authorization service.
"""

from typing import List, Optional, Sequence
from dataclasses import dataclass, field

from ..errors import InvalidInputError


@dataclass
class Group:
    """A users group with all of its members.

    Given a user, the group evaluates whether that user is a member.
    """
    name: str
    users: List[str] = field(default_factory=list)
    
    def evaluate(self, user: str) -> bool:
        """Check whether ``user`` is a member of this group."""
        if not user:
            raise InvalidInputError("user is empty")
        
        return user in self.users


@dataclass
class Permission:
    """A system permission with all the groups it has been granted to.

    Given a collection of groups, the permission evaluates whether any of
    them has been granted this permission.
    """
    name: str
    groups: List[str] = field(default_factory=list)
    
    def evaluate(self, groups: Optional[Sequence[str]]) -> bool:
        """Check whether ``groups`` intersects the groups granted this permission.

        ``None`` means there is no evaluation context and is rejected, while an
        empty sequence is a valid context that simply grants nothing.
        """
        if groups is None:
            raise InvalidInputError("groups is None")
        
        if not groups:
            return False
        
        # use a set for faster lookup
        granted = set(self.groups)
        return any(group in granted for group in groups)


@dataclass
class PolicyEvaluationResult:
    """Result of evaluating a user against a policy."""
    groups: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)

"""
In-memory policy evaluation engine.
"""

from .models import Group, Permission, PolicyEvaluationResult
from .engine import Policy

__all__ = ["Group", "Permission", "Policy", "PolicyEvaluationResult"]

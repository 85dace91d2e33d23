"""
PostgreSQL persistence for the policy store.
"""

from .postgres import PostgresPolicyStore
from .schema import create_schema

__all__ = ["PostgresPolicyStore", "create_schema"]

# backend/riskauth/crud/__init__.py
"""
CRUD operations package.
This module re-exports the CRUD objects from the underlying modules.
"""

from .crud_user import user

__all__ = ["user"]

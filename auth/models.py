"""
auth/models.py -- Domain dataclass for user accounts.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; api/models.py owns the HTTP transport shapes.

Layer rule: no imports from api/, web/, or middleware/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A user account.

    hashed_password is None for accounts created from the user management
    screen without a password; those accounts cannot sign in until a password
    is set through registration.
    """

    email: str
    name: str
    id: int | None = None
    bio: str | None = None
    avatar_url: str | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None

"""
User roles enumeration.

Defines the team roles for the training business.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Business owner; keeps 100% of their own charges
        MANAGER: Runs the floor; manages every client, 70% commission
        TRAINER: Manages assigned clients only, 70% commission
    """
    ADMIN = "admin"
    MANAGER = "manager"
    TRAINER = "trainer"

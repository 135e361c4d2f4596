"""rental_kernel.db -- Declarative base and the injectable database handle."""

from rental_kernel.db.base import Base, TrackedBase, UUIDString
from rental_kernel.db.engine import Database

__all__ = [
    "Base",
    "Database",
    "TrackedBase",
    "UUIDString",
]

"""
rental_billing -- Billing & settlement engine for leased properties.

Layers:
    domain/     Pure types and value objects (zero I/O)
    models/     SQLAlchemy ORM models with typed ``to_dto()`` mapping
    services/   Stateful components that own a Session
    collaborators.py  Protocols for the outbound side effects
"""

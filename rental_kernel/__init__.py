"""
rental_kernel -- Shared infrastructure for the rental billing engine.

Provides the database handle, declarative ORM base, structured logging,
injectable clock, money helpers, and the typed exception hierarchy.

Architecture:
    rental_kernel/ is the lowest layer.  It MUST NOT import from
    rental_billing, rental_ingestion, rental_config, or rental_batch.
"""

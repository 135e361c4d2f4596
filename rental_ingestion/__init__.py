"""
rental_ingestion -- External market data: index series and exchange rates.

Adapters talk HTTP to the publishing institutions (BCRA, BCB, datos.gob.ar)
and return ``SeriesObservation`` values.  ``IndexSyncService`` stores the
monthly index points through ``rental_billing.services.IndexStore``.
"""

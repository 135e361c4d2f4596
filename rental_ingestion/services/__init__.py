from rental_ingestion.services.index_sync import IndexSyncService

__all__ = ["IndexSyncService"]

"""HTTP clients for the index and exchange-rate publishers."""

from rental_ingestion.adapters.base import JsonHttpSource, build_session
from rental_ingestion.adapters.bcb import BcbClient
from rental_ingestion.adapters.bcra import BcraClient
from rental_ingestion.adapters.datos_ar import DatosArClient

__all__ = [
    "BcbClient",
    "BcraClient",
    "DatosArClient",
    "JsonHttpSource",
    "build_session",
]

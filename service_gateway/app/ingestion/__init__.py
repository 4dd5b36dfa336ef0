"""
Ingestion package for the Gateway.

The ingestion routine (breaker-guarded provider calls with cache and ledger
fallbacks) and the interval scheduler that drives it.
"""

from .service import ContentEnvelope, IngestionResult, IngestionService
from .scheduler import IngestionScheduler

__all__ = [
    "ContentEnvelope",
    "IngestionResult",
    "IngestionService",
    "IngestionScheduler",
]

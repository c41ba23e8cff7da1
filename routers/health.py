"""Operational endpoints for the ingestion pipeline."""
from fastapi import APIRouter, Query

from error_handler import dead_letter_queue
from metrics import metrics

router = APIRouter()


@router.get("/ingest/metrics")
def get_ingest_metrics():
    """Counters for received, dropped and persisted messages."""
    return metrics.get_summary()


@router.get("/ingest/dead-letters")
def get_dead_letters(limit: int = Query(100, ge=1, le=500)):
    """Most recently dropped messages, newest first."""
    entries = dead_letter_queue.recent(limit)
    return {"count": len(entries), "entries": entries}

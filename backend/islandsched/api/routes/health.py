from __future__ import annotations

from datetime import datetime, timezone
import multiprocessing

from fastapi import APIRouter

from islandsched.core.config import get_settings

router = APIRouter()

settings = get_settings()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/health/live")
def health_live() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health/ready")
def health_ready() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "runtime": {
            "cpu_count": multiprocessing.cpu_count(),
            "max_workers": settings.max_workers,
            "collector_rank": settings.collector_rank,
            "process_start_method": settings.process_start_method,
        },
        "exchange": {
            "timeout_seconds": settings.exchange_timeout_seconds,
            "retry_attempts": settings.exchange_retry_attempts,
            "retry_backoff_seconds": settings.exchange_retry_backoff_seconds,
        },
    }

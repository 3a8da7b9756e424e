import json
from datetime import datetime, timezone
from typing import Optional

from core.logger import logger


def log_ingestion(
    media_id: str,
    project_id: str,
    status: str,
    file_name: str,
    kind: Optional[str] = None,
    job_id: Optional[str] = None,
    error: Optional[str] = None,
    deduplicated: bool = False,
    duration_ms: Optional[int] = None,
) -> None:
    """
    One JSON line per ingestion outcome.
    """
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "media_ingested",
        "media_id": media_id,
        "project_id": project_id,
        "kind": kind,
        "status": status,
        "file_name": file_name[:255],  # Truncate long names
        "job_id": job_id,
        "deduplicated": deduplicated,
        "duration_ms": duration_ms,
    }
    if error:
        log_data["error"] = error[:500]

    if status != "queued":
        log_data["event"] = "media_ingest_rejected"
        logger.warning(json.dumps(log_data))
    else:
        logger.info(json.dumps(log_data))


def log_transition(media_id: str, project_id: str, previous: str, status: str, detail: Optional[str] = None) -> None:
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "media_status_changed",
        "media_id": media_id,
        "project_id": project_id,
        "from": previous,
        "to": status,
    }
    if detail:
        log_data["detail"] = detail[:500]
    logger.info(json.dumps(log_data))

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from stock_agent.core.errors import JobNotFound
from stock_agent.routers.deps import get_store
from stock_agent.schemas.analysis import Language
from stock_agent.services.queue.store import JobStore

router = APIRouter(prefix="/api/history", tags=["history"])
logger = logging.getLogger(__name__)


class HistorySaveRequest(BaseModel):
    result: dict[str, Any]
    query: str
    language: Language = "en"


def _report_ticker(result: dict[str, Any], query: str) -> str:
    focus = result.get("focusCompany") or {}
    ticker = (focus.get("profile") or {}).get("ticker") if isinstance(focus, dict) else None
    return ticker or query.split(" ")[0].upper()


@router.post("")
def save_report(payload: HistorySaveRequest, store: JobStore = Depends(get_store)) -> dict:
    job = store.create_completed_job(
        ticker=_report_ticker(payload.result, payload.query),
        query=payload.query,
        language=payload.language,
        result=payload.result,
    )
    return {"success": True, "message": "Report saved successfully", "jobId": job.id}


@router.get("")
def list_history(store: JobStore = Depends(get_store)) -> dict:
    history = []
    for job in store.list_completed():
        if not isinstance(job.result, dict):
            logger.warning("history_result_unreadable", extra={"job_id": job.id})
            continue
        history.append(
            {
                **job.result,
                "id": job.id,
                "timestamp": job.completed_at.isoformat() if job.completed_at else None,
                "status": "complete",
                "language": job.language or "en",
                "query": job.query or job.ticker,
            }
        )
    return {"history": history, "total": len(history)}


@router.delete("/{job_id}")
def delete_report(job_id: str, store: JobStore = Depends(get_store)) -> dict:
    if not store.delete_job(job_id):
        raise JobNotFound(job_id)
    return {"success": True, "message": "Report deleted successfully", "deletedId": job_id}


@router.delete("")
def clear_history(store: JobStore = Depends(get_store)) -> dict:
    deleted = store.delete_completed_jobs()
    return {"success": True, "message": "All history cleared", "deletedCount": deleted}

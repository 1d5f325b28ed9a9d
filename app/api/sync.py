"""Sync administration API endpoints."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database.cache import CacheBackend, get_cache
from app.database.database import get_db
from app.models.sync_record import SyncRecord
from app.services.encryption_service import EncryptionService
from app.services.exceptions import AuthError
from app.services.sync_service import SyncService, SYNC_TYPES
from app.services.token_provider import TokenProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncResponse(BaseModel):
    """Sync run response."""

    sync_id: int
    sync_type: str
    status: str
    started_at: str
    completed_at: Optional[str] = None
    changes_summary: Optional[str] = None
    error_message: Optional[str] = None


class RateLimitStatus(BaseModel):
    """Rate limiter counters and resume cursor."""

    current_count: int
    max_limit: int
    current_entity_index: int
    current_page: int
    total_entities: int
    total_pages: int
    current_entity_id: str
    window_start: float
    is_paused: bool
    seconds_until_reset: float


class ActiveSync(BaseModel):
    """Currently running sync."""

    sync_id: int
    status: str
    started_at: str
    duration_seconds: float


class SyncTypeStatus(BaseModel):
    """Status of one sync type."""

    in_progress: bool
    active_sync: Optional[ActiveSync] = None
    rate_limit: RateLimitStatus
    last_sync: Optional[SyncResponse] = None


class SyncStatusResponse(BaseModel):
    """Sync status response."""

    attendance: SyncTypeStatus
    employee: SyncTypeStatus


class EmployeesDataResponse(BaseModel):
    """Filtered Keka roster response."""

    data: List[Dict[str, Any]]
    total_records: int
    source: str
    succeeded: bool
    message: Optional[str] = None
    errors: Optional[List[str]] = None


class TokenStatusResponse(BaseModel):
    """Diagnostic view of the in-memory token slot."""

    has_token: bool
    token_prefix: Optional[str] = None
    acquired_at: Optional[str] = None
    source: Optional[str] = None


class MessageResponse(BaseModel):
    """Generic acknowledgement."""

    success: bool
    message: str


_token_provider: Optional[TokenProvider] = None
_sync_service: Optional[SyncService] = None


def get_token_provider(cache: CacheBackend = Depends(get_cache)) -> TokenProvider:
    """Get the process-wide token provider."""
    global _token_provider
    if _token_provider is None:
        _token_provider = TokenProvider(cache, EncryptionService())
    return _token_provider


def get_sync_service(
    cache: CacheBackend = Depends(get_cache),
    token_provider: TokenProvider = Depends(get_token_provider)
) -> SyncService:
    """Get the process-wide sync service.

    Shared by the API and the scheduler so both see the same engines and
    name-variant table.
    """
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService(cache, token_provider)
    return _sync_service


def _to_response(record: SyncRecord) -> SyncResponse:
    return SyncResponse(
        sync_id=record.id,
        sync_type=record.sync_type,
        status=record.status,
        started_at=record.started_at.isoformat(),
        completed_at=record.completed_at.isoformat() if record.completed_at else None,
        changes_summary=record.changes_summary,
        error_message=record.error_message
    )


def _check_sync_type(sync_type: str) -> None:
    if sync_type not in SYNC_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid sync type '{sync_type}'. Must be one of: {', '.join(SYNC_TYPES)}"
        )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get rate limiter state, active run and last run for both sync types."""
    try:
        status = await sync_service.get_sync_status(db)
        return SyncStatusResponse(**{
            sync_type: SyncTypeStatus(
                in_progress=info["in_progress"],
                active_sync=ActiveSync(**info["active_sync"]) if info["active_sync"] else None,
                rate_limit=RateLimitStatus(**info["rate_limit"]),
                last_sync=_to_response(info["last_sync"]) if info["last_sync"] else None
            )
            for sync_type, info in status.items()
        })
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get sync status: {str(e)}")


@router.post("/attendance", response_model=SyncResponse)
async def sync_attendance(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Trigger an attendance sync run (resumes from the stored checkpoint)."""
    try:
        sync_record = await sync_service.run_attendance_sync(db)
        return _to_response(sync_record)
    except RuntimeError as e:
        # Concurrent sync attempt
        raise HTTPException(status_code=409, detail=str(e))
    except AuthError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Attendance sync failed: {str(e)}")


@router.post("/employees", response_model=SyncResponse)
async def sync_employees(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Trigger an employee roster sync run."""
    try:
        sync_record = await sync_service.run_employee_sync(db)
        return _to_response(sync_record)
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AuthError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Employee sync failed: {str(e)}")


@router.get("/history", response_model=List[SyncResponse])
async def get_sync_history(
    sync_type: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get history of past sync runs, most recent first."""
    if sync_type:
        _check_sync_type(sync_type)
    try:
        history = sync_service.get_sync_history(db, sync_type=sync_type, limit=limit, offset=offset)
        return [_to_response(record) for record in history]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get sync history: {str(e)}")


@router.get("/history/{sync_id}", response_model=SyncResponse)
async def get_sync_record(
    sync_id: int,
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get a single sync run."""
    try:
        record = sync_service.get_sync_record(db, sync_id)
        if not record:
            raise HTTPException(status_code=404, detail=f"Sync record {sync_id} not found")
        return _to_response(record)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get sync record: {str(e)}")


@router.post("/reset/{sync_type}", response_model=MessageResponse)
async def reset_checkpoint(
    sync_type: str,
    sync_service: SyncService = Depends(get_sync_service)
):
    """Discard the resume checkpoint so the next run starts from the beginning."""
    _check_sync_type(sync_type)
    try:
        await sync_service.reset_checkpoint(sync_type)
        return MessageResponse(success=True, message=f"{sync_type} checkpoint reset")
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to reset checkpoint: {str(e)}")


@router.delete("/cache/employee-ids", response_model=MessageResponse)
async def clear_employee_ids_cache(
    sync_service: SyncService = Depends(get_sync_service)
):
    """Drop the cached employee id list so the next attendance run re-reads it."""
    try:
        await sync_service.clear_employee_ids_cache()
        return MessageResponse(success=True, message="Employee ID cache cleared")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to clear cache: {str(e)}")


@router.get("/employees", response_model=EmployeesDataResponse)
async def get_employees_data(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service)
):
    """Get the filtered Keka roster, served from cache when available."""
    result = await sync_service.get_employees_data(db)
    return EmployeesDataResponse(**result)


@router.get("/token", response_model=TokenStatusResponse)
async def get_token_status(
    token_provider: TokenProvider = Depends(get_token_provider)
):
    """Show whether a token is held in memory, without fetching one."""
    credential = token_provider.peek_credential()
    if not credential:
        return TokenStatusResponse(has_token=False)

    return TokenStatusResponse(
        has_token=True,
        token_prefix=f"{credential.value[:8]}...",
        acquired_at=datetime.utcfromtimestamp(credential.acquired_at).isoformat(),
        source=credential.source
    )


@router.post("/token/refresh", response_model=TokenStatusResponse)
async def refresh_token(
    token_provider: TokenProvider = Depends(get_token_provider)
):
    """Force a new credential exchange with Keka."""
    try:
        credential = await token_provider.refresh_token()
    except AuthError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return TokenStatusResponse(
        has_token=True,
        token_prefix=f"{credential.value[:8]}...",
        acquired_at=datetime.utcfromtimestamp(credential.acquired_at).isoformat(),
        source=credential.source
    )

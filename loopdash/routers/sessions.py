"""Session, transcript and checklist endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from loopdash import config
from loopdash.file_finder import validate_loop_id
from loopdash.log_store import EventLogStore, MutationResult
from loopdash.models import (
    ActionResponse,
    ChecklistResponse,
    ErrorResponse,
    FullTranscriptResponse,
    IterationsResponse,
    RotationResponse,
    Session,
    SessionsResponse,
    TranscriptAvailabilityResponse,
)
from loopdash.services import checklist as checklist_service
from loopdash.services import transcripts as transcript_service
from loopdash.sessions import get_session, list_sessions

logger = logging.getLogger("loopdash.api")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
transcripts_router = APIRouter(prefix="/api/transcript", tags=["transcripts"])
checklist_router = APIRouter(prefix="/api/checklist", tags=["checklists"])

_MUTATION_STATUS = {
    "NOT_FOUND": 404,
    "INVALID_STATE": 400,
    "CANCEL_FAILED": 500,
    "WRITE_FAILED": 500,
}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=code, message=message).model_dump())


def _invalid_loop_id(loop_id: str) -> JSONResponse:
    return _error(400, "INVALID_LOOP_ID", f"Invalid loop_id format: {loop_id}")


def _get_store(request: Request) -> EventLogStore:
    store = getattr(request.app.state, "log_store", None)
    if store is None:
        store = EventLogStore(config.LOG_FILE)
        request.app.state.log_store = store
    return store


def _mutation_response(result: MutationResult):
    if result.success:
        return ActionResponse(success=True, message=result.message, loop_id=result.loop_id)
    code = result.error or "INTERNAL_ERROR"
    return _error(_MUTATION_STATUS.get(code, 500), code, result.message)


# ── Sessions ────────────────────────────────────────────────────────

@sessions_router.get("", response_model=SessionsResponse)
def list_all_sessions(request: Request):
    sessions = list_sessions(_get_store(request).path)
    return SessionsResponse(
        sessions=sessions,
        total=len(sessions),
        active_count=sum(1 for s in sessions if s.status == "active"),
    )


@sessions_router.post("/rotate", response_model=RotationResponse)
def rotate_log(request: Request, max_entries: int | None = None):
    limit = config.MAX_LOG_ENTRIES if max_entries is None else max_entries
    result = _get_store(request).rotate(limit)
    if result.refused:
        return _error(500, "ROTATION_REFUSED", result.reason)
    return RotationResponse(purged_count=result.purged_count)


@sessions_router.delete("")
def delete_archived_sessions(request: Request):
    deleted = _get_store(request).delete_archived_runs()
    return {"success": True, "deleted_count": deleted, "message": f"Deleted {deleted} archived sessions"}


@sessions_router.get("/{loop_id}", response_model=Session)
def get_one_session(loop_id: str, request: Request):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    session = get_session(loop_id, _get_store(request).path)
    if session is None:
        return _error(404, "NOT_FOUND", f"Session not found: {loop_id}")
    return session


@sessions_router.post("/{loop_id}/cancel", response_model=ActionResponse)
def cancel_session(loop_id: str, request: Request):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    return _mutation_response(_get_store(request).cancel_run(loop_id))


@sessions_router.post("/{loop_id}/archive", response_model=ActionResponse)
def archive_session(loop_id: str, request: Request):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    return _mutation_response(_get_store(request).archive_run(loop_id))


@sessions_router.delete("/{loop_id}", response_model=ActionResponse)
def delete_session(loop_id: str, request: Request):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    store = _get_store(request)
    session = store.find_session(loop_id)
    if session is None:
        return _error(404, "NOT_FOUND", f"Session not found: {loop_id}")
    if session.status == "active":
        return _error(400, "INVALID_STATE", "Cannot delete active session. Cancel it first.")
    if not store.delete_run(loop_id):
        return _error(500, "DELETE_FAILED", f"Failed to delete session {loop_id}")
    return ActionResponse(success=True, message=f"Deleted session {loop_id}", loop_id=loop_id)


# ── Transcripts ─────────────────────────────────────────────────────

@transcripts_router.get("/{loop_id}", response_model=TranscriptAvailabilityResponse)
def transcript_availability(loop_id: str):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    return TranscriptAvailabilityResponse(
        hasIterations=transcript_service.has_iterations(loop_id),
        hasFullTranscript=transcript_service.has_full_transcript(loop_id),
    )


@transcripts_router.get("/{loop_id}/iterations", response_model=IterationsResponse)
def transcript_iterations(loop_id: str):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    iterations = transcript_service.get_iterations(loop_id)
    if iterations is None:
        return _error(404, "NOT_FOUND", f"No iterations found for loop {loop_id}")
    return IterationsResponse(iterations=iterations)


@transcripts_router.get("/{loop_id}/full", response_model=FullTranscriptResponse)
def transcript_full(loop_id: str):
    if not validate_loop_id(loop_id):
        return _invalid_loop_id(loop_id)
    messages = transcript_service.get_full_transcript(loop_id)
    if messages is None:
        return _error(404, "NOT_FOUND", f"No transcript found for loop {loop_id}")
    return FullTranscriptResponse(messages=messages)


# ── Checklists ──────────────────────────────────────────────────────

@checklist_router.get("/{loop_id}", response_model=ChecklistResponse)
def get_loop_checklist(loop_id: str):
    try:
        checklist, progress = checklist_service.get_checklist_with_progress(loop_id)
    except ValueError as exc:
        return _error(400, "INVALID_LOOP_ID", str(exc))
    if checklist is None:
        return _error(404, "NOT_FOUND", f"No checklist found for loop {loop_id}")
    return ChecklistResponse(checklist=checklist, progress=progress)

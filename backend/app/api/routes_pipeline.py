import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Response, Security
from fastapi.security.api_key import APIKeyHeader

from ..core.config import get_settings
from ..schemas.pipeline import (
    AggregateOut,
    PhaseDataIn,
    PhaseRunOut,
    PhaseRunRequest,
    PipelineResultOut,
    PipelineRunRequest,
)
from ..services.fetchers import get_fetcher_registry
from ..services.orchestrator import Phase, PhaseOrchestrator, build_phases
from ..services.phase_store import PhaseDataStore
from ..services.subjects import normalize_subject

router = APIRouter(tags=["pipeline"])

settings = get_settings()
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
logger = logging.getLogger(__name__)


def verify_api_key(api_key: str | None = Security(api_key_header)) -> None:
    """
    Simple header-based API key authentication.

    - In dev, if API_AUTH_KEY is not set, auth is skipped.
    - Otherwise, require X-API-Key == API_AUTH_KEY.
    """
    expected = settings.API_AUTH_KEY

    # In dev with no configured key, skip auth for convenience
    if settings.ENV == "dev" and not expected:
        return

    if not expected:
        # In non-dev environments, missing config is treated as misconfiguration
        raise HTTPException(status_code=401, detail="API key not configured")

    if api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_orchestrator() -> PhaseOrchestrator:
    return PhaseOrchestrator()


def get_phases() -> list[Phase]:
    return build_phases(get_fetcher_registry())


def get_phase_store() -> PhaseDataStore:
    return PhaseDataStore()


def _subject_or_400(subject: str) -> str:
    try:
        return normalize_subject(subject)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/pipeline/{subject}", response_model=PipelineResultOut)
async def run_pipeline(
    subject: str,
    payload: PipelineRunRequest | None = None,
    orchestrator: PhaseOrchestrator = Depends(get_orchestrator),
    phases: list[Phase] = Depends(get_phases),
    _: None = Depends(verify_api_key),
):
    """
    Run every phase for ``subject`` and return the collected context.

    Partial provider failures never fail the request; they are listed in
    ``warnings`` and per-phase ``errors``. The deep-analysis phase answers
    with a ``job_id`` to poll at ``GET /jobs/{job_id}``.
    """
    payload = payload or PipelineRunRequest()
    subject = _subject_or_400(subject)
    result = await orchestrator.run(
        subject,
        phases,
        session_id=payload.session_id,
        force_refresh=payload.force_refresh,
    )
    return result.to_dict()


@router.post("/pipeline/{subject}/phases/{phase_number}", response_model=PhaseRunOut)
async def run_single_phase(
    subject: str,
    phase_number: int,
    payload: PhaseRunRequest,
    orchestrator: PhaseOrchestrator = Depends(get_orchestrator),
    phases: list[Phase] = Depends(get_phases),
    _: None = Depends(verify_api_key),
):
    """
    Progressive mode: the client drives phases one request at a time and
    only carries ``session_id`` between them.
    """
    subject = _subject_or_400(subject)
    phase = next((p for p in phases if p.number == phase_number), None)
    if phase is None:
        raise HTTPException(status_code=404, detail="Phase not found")

    outcome, warnings = await orchestrator.run_phase(
        payload.session_id,
        subject,
        phase,
        force_refresh=payload.force_refresh,
    )
    return {
        "session_id": payload.session_id,
        "subject": subject,
        "phase": asdict(outcome),
        "payload": outcome.payload,
        "warnings": warnings,
    }


@router.put("/phase-data/{session_id}/{subject}/{phase}", status_code=204)
def put_phase_data(
    session_id: str,
    subject: str,
    phase: int,
    payload: PhaseDataIn,
    store: PhaseDataStore = Depends(get_phase_store),
    _: None = Depends(verify_api_key),
):
    try:
        store.store(session_id, subject, phase, payload.payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Response(status_code=204)


@router.get("/phase-data/{session_id}/{subject}/aggregate", response_model=AggregateOut)
def get_phase_aggregate(
    session_id: str,
    subject: str,
    upto_phase: int,
    store: PhaseDataStore = Depends(get_phase_store),
    _: None = Depends(verify_api_key),
):
    try:
        merged = store.aggregate(session_id, subject, upto_phase)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "session_id": session_id,
        "subject": normalize_subject(subject),
        "upto_phase": upto_phase,
        "payload": merged,
    }

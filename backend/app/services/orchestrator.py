from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from ..core.config import get_settings
from .caching import CacheManager, get_cache_manager
from .fetchers import BaseFetcher, FetcherRegistry
from .jobs import JobManager
from .phase_store import PhaseDataStore
from .subjects import normalize_subject

logger = logging.getLogger(__name__)

settings = get_settings()

PRIORITIES = ("critical", "important", "optional")


@dataclass
class FetchTask:
    name: str
    fetcher: BaseFetcher
    analysis_type: Optional[str] = None  # enables cache read-through
    cache_ttl: Optional[int] = None
    timeout: Optional[float] = None
    uses_context: bool = False  # derived providers get the prior phases' context


@dataclass
class Phase:
    number: int
    label: str
    tasks: List[FetchTask] = field(default_factory=list)
    timeout: Optional[float] = None  # per-task budget unless a task overrides it
    priority: str = "important"
    deep_analysis: bool = False

    def __post_init__(self) -> None:
        if self.number < 1:
            raise ValueError("phase numbers start at 1")
        if self.priority not in PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(PRIORITIES)}")


@dataclass
class FetchResult:
    name: str
    success: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    elapsed_ms: int = 0
    cached: bool = False


@dataclass
class PhaseOutcome:
    number: int
    label: str
    priority: str
    results: List[FetchResult] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    completed: bool = True
    job_id: Optional[str] = None
    job_status: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)


@dataclass
class ProgressEvent:
    subject: str
    session_id: str
    phase: int
    label: str
    completed_tasks: int
    total_tasks: int
    task: Optional[str] = None
    success: Optional[bool] = None
    phase_done: bool = False


@dataclass
class PipelineResult:
    subject: str
    session_id: str
    context: Dict[str, Any] = field(default_factory=dict)
    phases: List[PhaseOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    job_id: Optional[str] = None
    data_quality: float = 0.0
    elapsed_ms: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["partial"] = self.partial
        return data


ProgressCallback = Callable[[ProgressEvent], None]


def score_payload(payload: Optional[Dict[str, Any]]) -> int:
    """Share (0-100) of top-level fields that actually carry data."""
    if not payload:
        return 0
    filled = sum(1 for v in payload.values() if v not in (None, "", [], {}))
    return round(filled / len(payload) * 100)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PhaseOrchestrator:
    """
    Runs ordered phases for one subject.

    - Tasks inside a phase run concurrently (bounded), each under its own
      deadline; failures are recorded, never raised.
    - Phases run strictly in order; each phase's merged payload is written
      to the phase store before the next phase starts.
    - A ``deep_analysis`` phase creates a background job and returns its id
      instead of blocking on the computation.
    """

    def __init__(
        self,
        *,
        cache: Optional[CacheManager] = None,
        phase_store: Optional[PhaseDataStore] = None,
        job_manager: Optional[JobManager] = None,
        max_parallel: Optional[int] = None,
        default_timeout: Optional[float] = None,
    ) -> None:
        self.cache = cache or get_cache_manager()
        self.phase_store = phase_store or PhaseDataStore()
        self.job_manager = job_manager or JobManager()
        self.max_parallel = max_parallel or settings.PHASE_MAX_PARALLEL_TASKS
        self.default_timeout = default_timeout or settings.PHASE_TASK_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    def _cached(self, subject: str, task: FetchTask) -> Optional[FetchResult]:
        try:
            lookup = self.cache.get(subject, task.analysis_type)
        except Exception:
            logger.exception(
                "Cache read failed; fetching live",
                extra={"subject": subject, "analysis_type": task.analysis_type},
            )
            return None
        if not lookup.found or not isinstance(lookup.payload, dict):
            return None
        return FetchResult(name=task.name, success=True, payload=lookup.payload, cached=True)

    def _write_back(self, subject: str, task: FetchTask, payload: Dict[str, Any]) -> None:
        try:
            self.cache.set(
                subject,
                task.analysis_type,
                payload,
                ttl_seconds=task.cache_ttl,
                quality=score_payload(payload),
            )
        except Exception:
            logger.exception(
                "Cache write failed",
                extra={"subject": subject, "analysis_type": task.analysis_type},
            )

    async def _execute_task(
        self,
        subject: str,
        task: FetchTask,
        timeout: float,
        context: Dict[str, Any],
        force_refresh: bool,
    ) -> FetchResult:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(
                self._attempt(subject, task, timeout, context, force_refresh, started),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return FetchResult(
                name=task.name,
                success=False,
                error=f"{task.name}: timed out after {timeout:g}s",
                elapsed_ms=_elapsed_ms(started),
            )
        except Exception as e:
            logger.exception(
                "Fetcher '%s' raised",
                task.fetcher.name,
                extra={"connector": task.fetcher.name, "subject": subject, "step": task.name},
            )
            return FetchResult(
                name=task.name,
                success=False,
                error=f"{task.name}: {e.__class__.__name__}: {e}",
                elapsed_ms=_elapsed_ms(started),
            )

    async def _attempt(
        self,
        subject: str,
        task: FetchTask,
        timeout: float,
        context: Dict[str, Any],
        force_refresh: bool,
        started: float,
    ) -> FetchResult:
        # Cache tiers are sync (SQL, Redis); keep them off the loop and inside the task deadline.
        if task.analysis_type and not force_refresh:
            hit = await asyncio.to_thread(self._cached, subject, task)
            if hit is not None:
                return hit

        if task.uses_context:
            payload, error = await task.fetcher.fetch(subject, timeout, context=dict(context))
        else:
            payload, error = await task.fetcher.fetch(subject, timeout)

        elapsed = _elapsed_ms(started)
        if error or not isinstance(payload, dict):
            return FetchResult(
                name=task.name,
                success=False,
                error=error or f"{task.name}: provider returned no data",
                elapsed_ms=elapsed,
            )

        if task.analysis_type:
            await asyncio.to_thread(self._write_back, subject, task, payload)
        return FetchResult(name=task.name, success=True, payload=payload, elapsed_ms=elapsed)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], event: ProgressEvent) -> None:
        if on_progress is None:
            return
        try:
            on_progress(event)
        except Exception:
            logger.exception(
                "Progress callback raised",
                extra={"subject": event.subject, "phase": event.phase},
            )

    async def _collect(
        self,
        session_id: str,
        subject: str,
        phase: Phase,
        context: Dict[str, Any],
        force_refresh: bool,
        on_progress: Optional[ProgressCallback],
    ) -> PhaseOutcome:
        outcome = PhaseOutcome(number=phase.number, label=phase.label, priority=phase.priority)
        total = len(phase.tasks)
        semaphore = asyncio.Semaphore(self.max_parallel)
        done = 0

        async def _run_task(task: FetchTask) -> FetchResult:
            nonlocal done
            timeout = task.timeout or phase.timeout or self.default_timeout
            async with semaphore:
                result = await self._execute_task(subject, task, timeout, context, force_refresh)
            done += 1
            logger.info(
                "Task '%s' %s (%d/%d)",
                task.name,
                "succeeded" if result.success else "failed",
                done,
                total,
                extra={"subject": subject, "session_id": session_id, "phase": phase.number, "step": task.name},
            )
            self._report(
                on_progress,
                ProgressEvent(
                    subject=subject,
                    session_id=session_id,
                    phase=phase.number,
                    label=phase.label,
                    completed_tasks=done,
                    total_tasks=total,
                    task=task.name,
                    success=result.success,
                ),
            )
            return result

        outcome.results = list(await asyncio.gather(*(_run_task(t) for t in phase.tasks)))
        for result in outcome.results:
            if result.success:
                outcome.payload[result.name] = result.payload
            elif result.error:
                outcome.errors.append(result.error)
        return outcome

    def _create_job(self, session_id: str, subject: str, phase: Phase, outcome: PhaseOutcome) -> None:
        request = {"session_id": session_id, "upto_phase": phase.number, "label": phase.label}
        try:
            outcome.job_id = self.job_manager.create(subject, request)
            view = self.job_manager.poll(outcome.job_id) or {}
            outcome.job_status = view.get("status")
            if outcome.job_status == "error":
                outcome.errors.append(view.get("error") or "deep analysis job failed")
        except Exception as e:
            logger.exception(
                "Could not create deep-analysis job",
                extra={"subject": subject, "session_id": session_id, "phase": phase.number},
            )
            outcome.errors.append(f"deep analysis unavailable: {e}")

    def _persist(self, session_id: str, subject: str, outcome: PhaseOutcome) -> Optional[str]:
        try:
            self.phase_store.store(session_id, subject, outcome.number, outcome.payload)
        except Exception as e:
            logger.exception(
                "Failed to persist phase payload",
                extra={"subject": subject, "session_id": session_id, "phase": outcome.number},
            )
            return f"Phase {outcome.number} ({outcome.label}) could not be saved: {e}"
        return None

    async def _run_one(
        self,
        session_id: str,
        subject: str,
        phase: Phase,
        context: Dict[str, Any],
        force_refresh: bool,
        on_progress: Optional[ProgressCallback],
    ) -> tuple[PhaseOutcome, List[str]]:
        warnings: List[str] = []

        if phase.deep_analysis:
            outcome = PhaseOutcome(number=phase.number, label=phase.label, priority=phase.priority)
            await asyncio.to_thread(self._create_job, session_id, subject, phase, outcome)
        else:
            outcome = await self._collect(session_id, subject, phase, context, force_refresh, on_progress)
            persist_warning = await asyncio.to_thread(self._persist, session_id, subject, outcome)
            if persist_warning:
                warnings.append(persist_warning)

            if phase.tasks and outcome.succeeded == 0:
                warnings.append(
                    f"Phase {phase.number} ({phase.label}) returned no data: "
                    + "; ".join(outcome.errors or ["all sources failed"])
                )
            elif phase.priority == "critical":
                for result in outcome.results:
                    if not result.success:
                        warnings.append(f"Critical source '{result.name}' failed: {result.error}")

        if phase.deep_analysis and outcome.errors:
            warnings.extend(outcome.errors)

        self._report(
            on_progress,
            ProgressEvent(
                subject=subject,
                session_id=session_id,
                phase=phase.number,
                label=phase.label,
                completed_tasks=len(outcome.results),
                total_tasks=len(phase.tasks),
                phase_done=True,
            ),
        )
        logger.info(
            "Phase %d settled: %d/%d sources",
            phase.number,
            outcome.succeeded,
            len(phase.tasks),
            extra={"subject": subject, "session_id": session_id, "phase": phase.number},
        )
        return outcome, warnings

    async def run(
        self,
        subject: str,
        phases: Sequence[Phase],
        *,
        session_id: Optional[str] = None,
        force_refresh: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        """
        Run every phase in order and return whatever was collected.

        Partial failures never raise; they show up as per-task errors and
        pipeline warnings.
        """
        subject = normalize_subject(subject)
        session_id = session_id or str(uuid4())
        ordered = sorted(phases, key=lambda p: p.number)
        numbers = [p.number for p in ordered]
        if len(set(numbers)) != len(numbers):
            raise ValueError("phase numbers must be unique")

        started = time.monotonic()
        result = PipelineResult(subject=subject, session_id=session_id)
        logger.info(
            "Pipeline started with %d phases",
            len(ordered),
            extra={"subject": subject, "session_id": session_id},
        )

        for phase in ordered:
            outcome, warnings = await self._run_one(
                session_id, subject, phase, result.context, force_refresh, on_progress
            )
            result.context.update(outcome.payload)
            result.phases.append(outcome)
            result.warnings.extend(warnings)
            if outcome.job_id:
                result.job_id = outcome.job_id

        fetched = [r for p in result.phases for r in p.results]
        if fetched:
            result.data_quality = round(sum(1 for r in fetched if r.success) / len(fetched) * 100, 1)
        result.elapsed_ms = _elapsed_ms(started)

        logger.info(
            "Pipeline finished (quality=%s%%, warnings=%d)",
            result.data_quality,
            len(result.warnings),
            extra={"subject": subject, "session_id": session_id, "job_id": result.job_id},
        )
        return result

    async def run_phase(
        self,
        session_id: str,
        subject: str,
        phase: Phase,
        *,
        force_refresh: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> tuple[PhaseOutcome, List[str]]:
        """
        Run one phase in isolation, rebuilding context from the phase store.

        Used when each phase is served by a separate request or process.
        """
        subject = normalize_subject(subject)
        context = await asyncio.to_thread(self.phase_store.aggregate, session_id, subject, phase.number)
        return await self._run_one(session_id, subject, phase, context, force_refresh, on_progress)


# ----------------------------------------------------------------------
# Default plan
# ----------------------------------------------------------------------

DEFAULT_PLAN: List[Dict[str, Any]] = [
    {
        "number": 1,
        "label": "Market data",
        "priority": "critical",
        "tasks": [
            {"name": "market_data", "provider": "market", "analysis_type": "market-data", "cache_ttl": 300},
        ],
    },
    {
        "number": 2,
        "label": "Sentiment & news",
        "priority": "important",
        "tasks": [
            {"name": "sentiment", "provider": "sentiment", "analysis_type": "sentiment", "cache_ttl": 300},
            {"name": "news", "provider": "news", "analysis_type": "news", "cache_ttl": 300},
        ],
    },
    {
        "number": 3,
        "label": "Technical & on-chain",
        "priority": "important",
        "tasks": [
            {"name": "technical", "provider": "technical", "analysis_type": "technical", "cache_ttl": 300, "uses_context": True},
            {"name": "on_chain", "provider": "on_chain", "analysis_type": "on-chain", "cache_ttl": 300},
        ],
    },
    {
        "number": 4,
        "label": "Deep analysis",
        "priority": "optional",
        "deep_analysis": True,
        "tasks": [],
    },
]


def build_phases(registry: FetcherRegistry, plan: Optional[List[Dict[str, Any]]] = None) -> List[Phase]:
    """
    Materialise a plan into Phase objects, skipping steps whose provider is
    not registered in this deployment.
    """
    phases: List[Phase] = []
    for entry in plan or DEFAULT_PLAN:
        tasks: List[FetchTask] = []
        for step in entry.get("tasks") or []:
            fetcher = registry.get(step["provider"])
            if fetcher is None:
                logger.warning(
                    "No fetcher registered for '%s'; skipping step '%s'",
                    step["provider"],
                    step["name"],
                    extra={"connector": step["provider"], "step": step["name"]},
                )
                continue
            tasks.append(
                FetchTask(
                    name=step["name"],
                    fetcher=fetcher,
                    analysis_type=step.get("analysis_type"),
                    cache_ttl=step.get("cache_ttl"),
                    timeout=step.get("timeout"),
                    uses_context=bool(step.get("uses_context")),
                )
            )
        phases.append(
            Phase(
                number=entry["number"],
                label=entry["label"],
                tasks=tasks,
                timeout=entry.get("timeout"),
                priority=entry.get("priority", "important"),
                deep_analysis=bool(entry.get("deep_analysis")),
            )
        )
    return phases

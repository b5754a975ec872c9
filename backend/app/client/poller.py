"""
Consumer-side polling for analysis jobs.

The poller enforces its own attempt budget, independent of the server's
reaper, and stops the instant it first sees a terminal status: the stop
flag is set before anything else is scheduled, so no late poll can fire
after the result has arrived.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "error"})

PollFn = Callable[[str], Awaitable[Dict[str, Any]]]


@dataclass
class PollOutcome:
    job_id: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class JobPoller:
    def __init__(
        self,
        poll_fn: PollFn,
        *,
        interval: float = 5.0,
        max_attempts: int = 36,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._poll_fn = poll_fn
        self.interval = interval
        self.max_attempts = max_attempts
        self._on_update = on_update
        self._sleep = sleep
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def cancel(self) -> None:
        self._stopped = True

    def _notify(self, view: Dict[str, Any]) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(view)
        except Exception:
            logger.exception("Poll update callback raised")

    async def wait(self, job_id: str) -> PollOutcome:
        # Each wait is a fresh run; a stop from a previous job does not carry over
        self._stopped = False
        attempts = 0
        last_status = "queued"

        while not self._stopped:
            if attempts >= self.max_attempts:
                self._stopped = True
                return PollOutcome(
                    job_id=job_id,
                    status="error",
                    error=f"polling timed out after {attempts} attempts",
                    attempts=attempts,
                )

            attempts += 1
            try:
                view = await self._poll_fn(job_id)
            except Exception as e:
                logger.warning("Poll attempt %d for job %s failed: %s", attempts, job_id, e)
                view = None

            if view is not None:
                status = str(view.get("status") or "")
                if status in TERMINAL_STATUSES:
                    self._stopped = True
                    self._notify(view)
                    return PollOutcome(
                        job_id=job_id,
                        status=status,
                        result=view.get("result"),
                        error=view.get("error"),
                        attempts=attempts,
                    )
                last_status = status or last_status
                self._notify(view)

            if self._stopped:
                break
            await self._sleep(self.interval)

        return PollOutcome(
            job_id=job_id,
            status=last_status,
            error="polling cancelled",
            attempts=attempts,
        )


def http_poll_fn(
    base_url: str,
    *,
    api_key: Optional[str] = None,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PollFn:
    """Poll function backed by ``GET {base_url}/jobs/{job_id}``."""
    headers = {"X-API-Key": api_key} if api_key else {}

    async def _poll(job_id: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport) as client:
            resp = await client.get(f"/jobs/{job_id}", headers=headers)
            resp.raise_for_status()
            return resp.json()

    return _poll

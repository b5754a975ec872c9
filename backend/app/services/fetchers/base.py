from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

# (payload, error): exactly one side is set on a well-behaved adapter
FetchOutcome = Tuple[Optional[Dict[str, Any]], Optional[str]]


class BaseFetcher(ABC):
    """
    Uniform contract for a single data provider.

    Adapters report provider failures through the ``error`` side of the
    outcome. Exceptions and overruns of ``timeout`` are tolerated by the
    orchestrator but count as failures of that task.
    """

    name: str

    @abstractmethod
    async def fetch(
        self,
        subject: str,
        timeout: float,
        context: Optional[Dict[str, Any]] = None,
    ) -> FetchOutcome:
        ...

from __future__ import annotations

import json
from typing import Dict, Iterable, Optional
import logging

from .base import BaseFetcher, FetchOutcome
from .http_json import HttpJsonFetcher
from ...core.config import get_settings

logger = logging.getLogger(__name__)


class FetcherRegistry:
    """
    Registry of provider adapters keyed by provider name.

    - Built once per process from PROVIDER_ENDPOINTS_JSON.
    - Extra adapters (SDK clients, computed providers) can be registered
      at startup without changing the orchestrator.
    """

    def __init__(self, fetchers: Optional[Iterable[BaseFetcher]] = None) -> None:
        self._fetchers: Dict[str, BaseFetcher] = {}
        for fetcher in fetchers or ():
            self.register(fetcher)

    def register(self, fetcher: BaseFetcher) -> None:
        if fetcher.name in self._fetchers:
            logger.warning(
                "Replacing fetcher registered under '%s'",
                fetcher.name,
                extra={"connector": fetcher.name},
            )
        self._fetchers[fetcher.name] = fetcher

    def get(self, name: str) -> BaseFetcher | None:
        return self._fetchers.get(name)

    def names(self) -> list[str]:
        return sorted(self._fetchers)

    @classmethod
    def from_settings(cls) -> "FetcherRegistry":
        settings = get_settings()
        registry = cls()
        if not settings.PROVIDER_ENDPOINTS_JSON:
            logger.warning("PROVIDER_ENDPOINTS_JSON not configured; no providers registered.")
            return registry

        try:
            endpoints = json.loads(settings.PROVIDER_ENDPOINTS_JSON)
        except ValueError as e:
            raise RuntimeError("PROVIDER_ENDPOINTS_JSON must be a JSON object") from e
        if not isinstance(endpoints, dict):
            raise RuntimeError("PROVIDER_ENDPOINTS_JSON must be a JSON object")

        for name, url_template in endpoints.items():
            registry.register(
                HttpJsonFetcher(name, str(url_template), api_key=settings.PROVIDER_API_KEY)
            )
        return registry


_registry: FetcherRegistry | None = None


def get_fetcher_registry() -> FetcherRegistry:
    global _registry
    if _registry is None:
        _registry = FetcherRegistry.from_settings()
    return _registry


__all__ = [
    "BaseFetcher",
    "FetchOutcome",
    "FetcherRegistry",
    "HttpJsonFetcher",
    "get_fetcher_registry",
]

# backend/app/services/fetchers/http_json.py

from __future__ import annotations

from typing import Any, Dict, Optional

import logging

import httpx

from tenacity import retry, wait_exponential, stop_after_attempt, retry_if_exception_type

from .base import BaseFetcher, FetchOutcome

logger = logging.getLogger(__name__)


class HttpJsonFetcher(BaseFetcher):
    """
    Generic adapter for providers that answer ``GET <url>`` with a JSON object.

    ``url_template`` may contain ``{subject}``; e.g.
    ``https://data.example.com/v1/market/{subject}``.

    - 2xx with a JSON object -> (payload, None)
    - 404 -> (None, "no data ...")
    - other 4xx/5xx -> (None, "HTTP <status>")
    - transport errors are retried briefly, then reported as errors.
    """

    def __init__(
        self,
        name: str,
        url_template: str,
        *,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.url_template = url_template
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, url: str, timeout: float) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            return await client.get(url, headers=self._headers())

    async def fetch(
        self,
        subject: str,
        timeout: float,
        context: Optional[Dict[str, Any]] = None,
    ) -> FetchOutcome:
        url = self.url_template.format(subject=subject)
        try:
            resp = await self._get(url, timeout)
        except httpx.HTTPError as e:
            logger.warning(
                "Provider '%s' request failed: %s",
                self.name,
                e,
                extra={"connector": self.name, "subject": subject},
            )
            return None, f"{self.name}: request failed ({e.__class__.__name__})"

        if resp.status_code == 404:
            return None, f"{self.name}: no data for {subject}"
        if not resp.is_success:
            return None, f"{self.name}: HTTP {resp.status_code}"

        try:
            payload: Any = resp.json()
        except ValueError:
            return None, f"{self.name}: response was not valid JSON"

        if not isinstance(payload, dict):
            return None, f"{self.name}: expected a JSON object"
        return payload, None

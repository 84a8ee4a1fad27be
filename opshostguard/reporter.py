"""Fleet run reporter - sends records and summary to the dashboard server."""
import asyncio
import logging
from typing import Optional

import httpx

from opshostguard import __version__
from opshostguard.config import ServerConfig

logger = logging.getLogger(__name__)

RUNS_ENDPOINT = "/api/v1/fleet/runs"


class FleetReporter:
    def __init__(self, config: ServerConfig, retries: int = 3):
        self.config = config
        self.retries = retries
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.url)

    def _headers(self) -> dict:
        headers = {"User-Agent": f"opshostguard/{__version__}"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.url,
                headers=self._headers(),
                timeout=30,
            )
        return self._client

    async def publish(self, report) -> bool:
        """Post one cycle report. Returns True on success, never raises."""
        if not self.enabled:
            return False
        payload = report.model_dump(mode="json")
        client = await self._get_client()
        for attempt in range(self.retries):
            try:
                resp = await client.post(RUNS_ENDPOINT, json=payload)
                resp.raise_for_status()
                logger.info(
                    "Published run for '%s' (%d hosts)", report.group, report.summary.total_hosts
                )
                return True
            except httpx.HTTPError as e:
                wait = min(2 ** attempt, 30)
                logger.warning(f"Publish failed (attempt {attempt + 1}): {e}. Retry in {wait}s")
                if attempt + 1 < self.retries:
                    await asyncio.sleep(wait)
        logger.warning("Giving up publishing run for '%s'", report.group)
        return False

    async def close(self):
        if self._client:
            await self._client.aclose()

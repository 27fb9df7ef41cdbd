from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from cli.config import CLIConfig
from services.errors import HistoricalFetchError


class ApiClient:
    """HTTP client for the historical reading query."""

    def __init__(self, config: CLIConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._config = config
        self._transport = transport

    def _path(self, device_id: Optional[int]) -> str:
        if device_id is None:
            return "/api/readings/recent"
        return f"/api/readings/by-device/{device_id}"

    async def fetch_recent(self, device_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return the stored readings, most recent first.

        Every failure (connection, HTTP status, payload shape) is reported as
        :class:`HistoricalFetchError`.
        """
        try:
            async with httpx.AsyncClient(
                base_url=self._config.base_url,
                timeout=self._config.request_timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(self._path(device_id))
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise HistoricalFetchError(f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise HistoricalFetchError(str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise HistoricalFetchError("response is not valid JSON") from exc

        if not isinstance(payload, list):
            raise HistoricalFetchError("unexpected response payload")
        return [item for item in payload if isinstance(item, dict)]

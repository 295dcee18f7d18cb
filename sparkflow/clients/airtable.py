"""Airtable REST client used by the spark import."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..config import AirtableConfig
from ..errors import AirtableAPIError

logger = logging.getLogger(__name__)


class AirtableClient:
    """List every record of an Airtable table, following ``offset`` pagination."""

    def __init__(
        self,
        config: Optional[AirtableConfig] = None,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or AirtableConfig()
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    async def list_records(
        self, api_key: str, base_id: str, table_id: str
    ) -> List[Dict[str, Any]]:
        url = f"{self.config.base_url.rstrip('/')}/{base_id}/{table_id}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        records: List[Dict[str, Any]] = []
        offset: Optional[str] = None
        page = 1
        while True:
            params = {"offset": offset} if offset else None
            logger.info(f"Fetching page {page} from Airtable")
            response = await self._http.get(url, headers=headers, params=params)
            if not response.is_success:
                raise AirtableAPIError(response.status_code, response.text)

            data = response.json()
            batch = data.get("records") or []
            logger.info(f"Received {len(batch)} records on page {page}")
            records.extend(batch)

            offset = data.get("offset")
            if not offset:
                break
            if page >= self.config.max_pages:
                logger.warning(
                    f"Stopped after {page} pages of {base_id}/{table_id}"
                )
                break
            page += 1
            await self._sleep(self.config.page_pause)

        logger.info(f"Total records fetched from Airtable: {len(records)}")
        return records

"""Optional open-data lookup (data.gov.sg CKAN action API).

A keyword search over the dataset catalog yields a resource id; a record search
against that resource, filtered by free text, yields rows whose name/address
columns are detected heuristically by substring match on column names.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("babygpt.reference")

NAME_KEYS = ["centre_name", "center_name", "school_name", "name", "centre", "center"]
ADDRESS_KEYS = ["address", "postal", "street", "location"]

INFANTCARE_DATASET_KEYWORD = "infant care centres"


@dataclass(frozen=True)
class ReferenceRecord:
    name: str
    address: str


def _find_column(columns: List[str], candidates: List[str]) -> Optional[str]:
    # Candidate order wins; the first column containing the candidate is used.
    lowered = {column: column.lower() for column in columns}
    for candidate in candidates:
        for column, name in lowered.items():
            if candidate in name:
                return column
    return None


def records_from_rows(rows: List[Dict[str, Any]], limit: int) -> List[ReferenceRecord]:
    """Map raw datastore rows to name/address records using heuristic column detection."""
    rows = [row for row in rows if isinstance(row, dict)]
    if not rows:
        return []
    columns = [str(column) for column in rows[0].keys()]
    name_column = _find_column(columns, NAME_KEYS)
    address_column = _find_column(columns, ADDRESS_KEYS)
    if not name_column:
        return []
    records: List[ReferenceRecord] = []
    for row in rows:
        name = str(row.get(name_column) or "").strip()
        if not name:
            continue
        address = str(row.get(address_column) or "").strip() if address_column else ""
        records.append(ReferenceRecord(name=name, address=address))
        if len(records) >= limit:
            break
    return records


class ReferenceDataClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def search(self, keyword: str, query: str, limit: int = 3) -> List[ReferenceRecord]:
        """Purpose: Look up records in the first dataset matching `keyword`.
        Inputs/Outputs: Inputs are a catalog keyword, a free-text filter and a limit;
            output is a list of ReferenceRecord.
        Side Effects / State: Two outbound HTTP GETs bounded by a fixed deadline.
        Dependencies: httpx.AsyncClient, records_from_rows.
        Failure Modes: Timeout, HTTP and payload errors are logged and yield [].
        If Removed: Infantcare replies carry no nearby-centre suggestions.
        Testing Notes: Use httpx.MockTransport for both endpoints and a slow handler.
        """
        try:
            return await asyncio.wait_for(self._search(keyword, query, limit), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("reference lookup timed out keyword=%s timeout=%s", keyword, self._timeout)
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("reference lookup failed keyword=%s error=%r", keyword, exc)
        return []

    async def _search(self, keyword: str, query: str, limit: int) -> List[ReferenceRecord]:
        response = await self._client.get(f"{self._base_url}/package_search", params={"q": keyword, "rows": 1})
        response.raise_for_status()
        packages = [package for package in response.json()["result"]["results"] if isinstance(package, dict)]
        if not packages or not packages[0].get("resources"):
            return []
        resource_id = packages[0]["resources"][0]["id"]

        response = await self._client.get(
            f"{self._base_url}/datastore_search",
            params={"resource_id": resource_id, "q": query, "limit": limit * 3},
        )
        response.raise_for_status()
        rows = response.json()["result"]["records"]
        records = records_from_rows(rows, limit)
        logger.info("reference lookup keyword=%s resource=%s records=%s", keyword, resource_id, len(records))
        return records

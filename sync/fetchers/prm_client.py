"""
PRM (Impartner) object API client with filter DSL helpers
"""

from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from datetime import datetime
from core.config import settings
from core.exceptions import FetchError, APIFetchError
from sync.fetchers.base import PaginatedFetcher, PageBatch
import logging

logger = logging.getLogger(__name__)

OBJECTS_PATH = "/api/objects/v1"


def _quote(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def updated_since_filter(since: datetime) -> str:
    return f"(Updated > {_quote(since.isoformat())})"


def field_equals_any(field: str, values: Iterable[Any]) -> str:
    return " or ".join(f"{field} eq {_quote(v)}" for v in values)


class PrmClient(PaginatedFetcher):
    """
    Skip/take client for PRM objects (Account, User, Lead).
    
    Every response is wrapped in {success, data: {count, results}};
    success == false is treated as a failed request.
    """
    
    source_name = "prm"
    
    def __init__(
        self,
        api_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
        request_delay: Optional[float] = None,
        rate_limit_backoff: Optional[float] = None,
        **kwargs
    ):
        self.api_key = api_key or settings.PRM_API_KEY
        self.tenant_id = tenant_id or settings.PRM_TENANT_ID
        super().__init__(
            base_url=base_url or settings.PRM_API_URL,
            page_size=page_size or settings.PRM_PAGE_SIZE,
            request_delay=(
                settings.PRM_REQUEST_DELAY_MS / 1000.0 if request_delay is None else request_delay
            ),
            rate_limit_backoff=(
                settings.PRM_RATE_LIMIT_BACKOFF_SECONDS if rate_limit_backoff is None else rate_limit_backoff
            ),
            **kwargs
        )
    
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"prm-key {self.api_key or ''}",
            "X-PRM-TenantId": str(self.tenant_id),
            "Accept": "application/json",
        }
    
    def _unwrap(self, payload: Any, path: str) -> Dict[str, Any]:
        if not isinstance(payload, dict) or not payload.get("success", False):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise APIFetchError(
                f"PRM request was not successful: {message or 'unknown error'}",
                context={"api_url": f"{self.base_url}{path}", "source_name": self.source_name}
            )
        return payload.get("data") or {}
    
    async def iter_pages(
        self,
        object_name: str,
        fields: List[str],
        filter_expr: Optional[str] = None,
        order_by: Optional[str] = None,
    ) -> AsyncIterator[PageBatch]:
        """
        Yield an object collection one page at a time.
        
        Raises:
            FetchError: with pages_retrieved/items_retrieved set to the
                progress made before the failing page
        """
        path = f"{OBJECTS_PATH}/{object_name}"
        skip = 0
        page = 1
        pages_retrieved = 0
        items_retrieved = 0
        
        while True:
            params: Dict[str, Any] = {
                "fields": ",".join(fields),
                "take": self.page_size,
                "skip": skip,
            }
            if filter_expr:
                params["filter"] = filter_expr
            if order_by:
                params["orderby"] = order_by
            
            try:
                response = await self._request_with_retry("GET", path, params=params)
                data = self._unwrap(self._parse_json(response, path, page), path)
            except FetchError as e:
                raise e.with_progress(pages_retrieved, items_retrieved)
            
            results = data.get("results") or []
            pages_retrieved += 1
            items_retrieved += len(results)
            
            if results:
                yield PageBatch(page, results, data.get("count"), items_retrieved)
            
            if len(results) < self.page_size:
                break
            skip += self.page_size
            page += 1
        
        logger.info(f"Fetched {items_retrieved} {object_name} records ({pages_retrieved} pages)")
    
    async def fetch_all(
        self,
        object_name: str,
        fields: List[str],
        filter_expr: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        async for batch in self.iter_pages(object_name, fields, filter_expr=filter_expr):
            records.extend(batch.items)
        return records
    
    async def patch(self, object_name: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Bulk-update objects.
        
        Returns one result dict per record ({"success": bool, ...}). When
        the PRM acknowledges the batch without per-record results every
        record is reported successful.
        """
        path = f"{OBJECTS_PATH}/{object_name}"
        response = await self._request_with_retry("PATCH", path, json=records)
        payload = self._parse_json(response, path)
        
        results = payload.get("results") if isinstance(payload, dict) else None
        if results is None and isinstance(payload, dict):
            results = (payload.get("data") or {}).get("results")
        if results is None:
            return [{"success": True, "id": r.get("Id")} for r in records]
        return results

"""
LMS (Northpass) collection client
"""

from typing import Any, AsyncIterator, Dict, List, Optional
from datetime import datetime
from core.config import settings
from core.exceptions import FetchError
from sync.fetchers.base import PaginatedFetcher, PageBatch
import logging

logger = logging.getLogger(__name__)

# Collection paths
PEOPLE_PATH = "/v2/people"
GROUPS_PATH = "/v2/groups"
COURSES_PATH = "/v2/courses"
COURSE_PROPERTIES_PATH = "/v2/properties/courses"
UPDATED_SINCE_PARAM = "filter[updated_at][gteq]"


def group_memberships_path(group_id: str) -> str:
    return f"/v2/groups/{group_id}/memberships"


def transcripts_path(user_id: str) -> str:
    return f"/v2/transcripts/{user_id}"


class LmsClient(PaginatedFetcher):
    """
    Page-numbered JSON:API client authenticated with a static API key.
    
    Pages are requested with page/limit; a page shorter than the page
    size is the last one.
    """
    
    source_name = "lms"
    
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
        request_delay: Optional[float] = None,
        rate_limit_backoff: Optional[float] = None,
        **kwargs
    ):
        self.api_key = api_key or settings.LMS_API_KEY
        super().__init__(
            base_url=base_url or settings.LMS_API_URL,
            page_size=page_size or settings.LMS_PAGE_SIZE,
            request_delay=(
                settings.LMS_REQUEST_DELAY_MS / 1000.0 if request_delay is None else request_delay
            ),
            rate_limit_backoff=(
                settings.LMS_RATE_LIMIT_BACKOFF_SECONDS if rate_limit_backoff is None else rate_limit_backoff
            ),
            **kwargs
        )
    
    def _headers(self) -> Dict[str, str]:
        return {
            "X-Api-Key": self.api_key or "",
            "Accept": "application/json",
        }
    
    async def iter_pages(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        since: Optional[datetime] = None,
    ) -> AsyncIterator[PageBatch]:
        """
        Yield the collection at path one page at a time.
        
        Args:
            path: Collection path, e.g. /v2/people
            params: Extra query parameters
            since: Only records updated at or after this instant
        
        Raises:
            FetchError: with pages_retrieved/items_retrieved set to the
                progress made before the failing page
        """
        page = 1
        pages_retrieved = 0
        items_retrieved = 0
        
        while True:
            query = dict(params or {})
            query["page"] = page
            query["limit"] = self.page_size
            if since is not None:
                query[UPDATED_SINCE_PARAM] = since.isoformat()
            
            try:
                response = await self._request_with_retry("GET", path, params=query)
                data = self._parse_json(response, path, page)
            except FetchError as e:
                raise e.with_progress(pages_retrieved, items_retrieved)
            
            if isinstance(data, list):
                records = data
                total = None
            else:
                records = data.get("data") or []
                meta = data.get("meta") or {}
                total = meta.get("total_count", meta.get("total"))
            
            pages_retrieved += 1
            items_retrieved += len(records)
            logger.debug(f"Fetched {len(records)} records from {path} page {page}")
            
            if records:
                yield PageBatch(page, records, total, items_retrieved)
            
            if len(records) < self.page_size:
                break
            page += 1
        
        logger.info(f"Fetched {items_retrieved} records from {path} ({pages_retrieved} pages)")
    
    async def fetch_all(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        async for batch in self.iter_pages(path, params=params, since=since):
            records.extend(batch.items)
        return records
    
    def iter_transcripts(self, user_id: str) -> AsyncIterator[PageBatch]:
        return self.iter_pages(transcripts_path(user_id))
    
    def iter_group_memberships(self, group_id: str) -> AsyncIterator[PageBatch]:
        return self.iter_pages(group_memberships_path(group_id))

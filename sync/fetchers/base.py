"""
Paginated REST fetcher with rate limiting, retry and circuit breaker.

This module provides the request machinery shared by the LMS and PRM
clients:
- Fixed client-side delay between requests
- Suspension and same-page retry on HTTP 429
- Exponential backoff retry for 5xx, timeouts and transport errors
- Circuit breaker to stop hammering a failing upstream
- Typed errors carrying how far the page sequence got
"""

import asyncio
import time
import httpx
from typing import Any, Dict, List, NamedTuple, Optional
from datetime import datetime, timedelta
from core.config import settings
from core.exceptions import (
    APIFetchError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError,
)
import logging

logger = logging.getLogger(__name__)


class PageBatch(NamedTuple):
    """One page of a remote collection."""
    page: int
    items: List[Dict[str, Any]]
    total: Optional[int]
    items_so_far: int


class PaginatedFetcher:
    """
    Base class for paginated remote collection clients.
    
    Subclasses provide the auth headers and the page walking; this class
    owns the HTTP client and _request_with_retry.
    
    Attributes:
        page_size: Items requested per page
        request_delay: Seconds between consecutive requests
        rate_limit_backoff: Seconds to suspend after an HTTP 429
        max_retries: Attempts for 5xx/timeouts/transport errors
        max_rate_limit_waits: Consecutive 429s tolerated for one request
    """
    
    source_name = "remote"
    
    def __init__(
        self,
        base_url: str,
        page_size: int = 100,
        request_delay: float = 0.0,
        rate_limit_backoff: float = 10.0,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        max_rate_limit_waits: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.request_delay = request_delay
        self.rate_limit_backoff = rate_limit_backoff
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = settings.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.max_rate_limit_waits = max_rate_limit_waits
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_request_at: Optional[float] = None
        self.requests_made = 0
        
        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = settings.CIRCUIT_BREAKER_THRESHOLD
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = settings.CIRCUIT_BREAKER_TIMEOUT_SECONDS
    
    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------
    
    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}
    
    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client
    
    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
    
    async def __aenter__(self):
        return self
    
    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
    
    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------
    
    def _is_circuit_open(self) -> bool:
        if self._circuit_breaker_open_until is None:
            return False
        
        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.source_name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False
        
        return True
    
    def _record_failure(self):
        self._circuit_breaker_failures += 1
        
        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.source_name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )
    
    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None
    
    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    
    async def _throttle(self):
        """Keep at least request_delay seconds between requests."""
        if self.request_delay <= 0 or self._last_request_at is None:
            return
        elapsed = time.monotonic() - self._last_request_at
        if elapsed < self.request_delay:
            await asyncio.sleep(self.request_delay - elapsed)
    
    def _retry_after(self, response: httpx.Response) -> float:
        header = response.headers.get("Retry-After")
        try:
            server_delay = float(header) if header else 0.0
        except ValueError:
            server_delay = 0.0
        return max(self.rate_limit_backoff, server_delay)
    
    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        """
        Make an HTTP request with rate-limit suspension and retry logic.
        
        A 429 suspends for rate_limit_backoff seconds and repeats the same
        request without consuming a retry attempt. 5xx responses,
        timeouts and transport errors back off exponentially.
        
        Raises:
            AuthenticationError: 401/403
            ResourceNotFoundError: 404
            RateLimitError: more than max_rate_limit_waits consecutive 429s
            NetworkError: 5xx/timeouts/transport errors after max retries
            APIFetchError: any other non-2xx response, or an open circuit
        """
        url = f"{self.base_url}{path}"
        
        if self._is_circuit_open():
            raise APIFetchError(
                f"Circuit breaker is open for {self.source_name}",
                context={
                    "source_name": self.source_name,
                    "api_url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )
        
        attempt = 0
        rate_limit_waits = 0
        
        while True:
            await self._throttle()
            
            try:
                logger.debug(f"{method} {url} attempt {attempt + 1}/{self.max_retries}")
                self._last_request_at = time.monotonic()
                self.requests_made += 1
                response = await self.client.request(method, path, params=params, json=json)
            
            except httpx.TimeoutException as e:
                attempt += 1
                if attempt < self.max_retries:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(f"Request timeout on {url}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Request timeout after {self.max_retries} retries",
                    context={
                        "api_url": url,
                        "source_name": self.source_name,
                        "timeout": self.timeout,
                        "retry_count": attempt
                    },
                    original_exception=e
                )
            
            except httpx.TransportError as e:
                attempt += 1
                if attempt < self.max_retries:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(f"Network error on {url}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Network error after {self.max_retries} retries",
                    context={
                        "api_url": url,
                        "source_name": self.source_name,
                        "retry_count": attempt
                    },
                    original_exception=e
                )
            
            status = response.status_code
            
            if status == 429:
                rate_limit_waits += 1
                if rate_limit_waits > self.max_rate_limit_waits:
                    self._record_failure()
                    raise RateLimitError(
                        f"Rate limit exceeded for {url}",
                        context={
                            "status_code": 429,
                            "api_url": url,
                            "source_name": self.source_name,
                            "rate_limit_waits": rate_limit_waits - 1
                        },
                        retry_after=self._retry_after(response),
                        status_code=429
                    )
                wait = self._retry_after(response)
                logger.warning(f"Rate limited by {self.source_name}. Waiting {wait} seconds before retrying")
                await asyncio.sleep(wait)
                continue
            
            if status in (401, 403):
                self._record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={
                        "status_code": status,
                        "api_url": url,
                        "source_name": self.source_name
                    },
                    status_code=status
                )
            
            if status == 404:
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={
                        "status_code": 404,
                        "api_url": url,
                        "source_name": self.source_name
                    },
                    status_code=404
                )
            
            if status >= 500:
                attempt += 1
                if attempt < self.max_retries:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Server error {status} from {self.source_name}. "
                        f"Retrying in {delay} seconds (attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue
                self._record_failure()
                raise NetworkError(
                    f"Server error after {self.max_retries} retries",
                    context={
                        "status_code": status,
                        "api_url": url,
                        "source_name": self.source_name,
                        "retry_count": attempt,
                        "response_body": response.text[:500]
                    },
                    status_code=status
                )
            
            if not 200 <= status < 300:
                self._record_failure()
                raise APIFetchError(
                    f"Unexpected HTTP {status} from {url}",
                    context={
                        "status_code": status,
                        "api_url": url,
                        "source_name": self.source_name,
                        "response_body": response.text[:500]
                    },
                    status_code=status
                )
            
            self._record_success()
            return response
    
    def _parse_json(self, response: httpx.Response, path: str, page: int = 0) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise APIFetchError(
                "Failed to parse JSON response",
                context={
                    "api_url": f"{self.base_url}{path}",
                    "source_name": self.source_name,
                    "page": page,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )
    
    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Single GET returning the decoded body."""
        response = await self._request_with_retry("GET", path, params=params)
        return self._parse_json(response, path)

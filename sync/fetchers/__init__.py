from sync.fetchers.base import PaginatedFetcher, PageBatch
from sync.fetchers.lms_client import LmsClient
from sync.fetchers.prm_client import PrmClient

__all__ = ["PaginatedFetcher", "PageBatch", "LmsClient", "PrmClient"]

import httpx
from typing import Optional

from knowflow.core.logging import get_logger

logger = get_logger("integrations.http")

class HttpClient:
    """Process-wide pooled client shared by data-source steps and notifiers."""

    _client: Optional[httpx.AsyncClient] = None

    @classmethod
    async def get_client(cls) -> httpx.AsyncClient:
        if cls._client is None or cls._client.is_closed:
            logger.info("Initializing global HTTP client")
            cls._client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            )
        return cls._client

    @classmethod
    def set_client(cls, client: Optional[httpx.AsyncClient]) -> None:
        cls._client = client

    @classmethod
    async def close_client(cls):
        if cls._client and not cls._client.is_closed:
            logger.info("Closing global HTTP client")
            await cls._client.aclose()
        cls._client = None

async def get_http_client() -> httpx.AsyncClient:
    return await HttpClient.get_client()

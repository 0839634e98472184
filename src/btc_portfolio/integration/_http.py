import asyncio

import httpx


class LazyAsyncClient:
    """Creates the shared ``httpx.AsyncClient`` on first use and after close."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self._client = client
        self._client_lock = asyncio.Lock()
        self._timeout = timeout

    async def get(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            # Another task may have created it while we waited.
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self._timeout)
                self._client = client
            return client

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

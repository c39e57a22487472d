"""
HTTP object source (public buckets, presigned URLs, object gateways).

This module provides:
- HEAD-based fingerprinting with exponential backoff retries
- Streamed GET of newline-delimited JSON objects
- Classification of HTTP failures into retryable and permanent errors
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
import asyncio
import logging

import httpx

from core.exceptions import (
    ConfigurationError,
    ProbeError,
    SourceAccessError,
    SourceError,
    SourceNotFoundError,
    SourceUnavailableError,
)
from ingestion.sources.base import PartitionSource, decode_json_lines

logger = logging.getLogger(__name__)


def classify_status(status_code: int, key: str, url: str) -> Optional[SourceError]:
    """Return the source error for a non-success status, or None"""
    context = {"partition_key": key, "url": url, "status_code": status_code}

    if status_code in (401, 403):
        return SourceAccessError(f"Authentication failed for {url}", context=context)
    if status_code == 404:
        return SourceNotFoundError(f"Object not found: {url}", context=context)
    if status_code == 429 or status_code >= 500:
        return SourceUnavailableError(f"Server error {status_code} for {url}", context=context)
    if status_code >= 400:
        return SourceAccessError(f"Request rejected with {status_code} for {url}", context=context)
    return None


class HttpPartitionSource(PartitionSource):
    """
    Read partitions over HTTP(S), e.g. ``https://data.example.com/year={key}.jsonl``.

    Attributes:
        timeout: Request timeout in seconds (default: 30.0)
        max_retries: Attempts for HEAD probes (default: 3)
        retry_delay: Initial probe retry delay in seconds (default: 1.0)

    Fingerprint: ETag, falling back to Last-Modified and Content-Length.
    """

    def __init__(
        self,
        uri_template: str,
        record_format: str = "jsonl",
        batch_size: int = 500,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(uri_template, record_format, batch_size)
        if record_format != "jsonl":
            raise ConfigurationError(
                "HTTP sources only stream JSON lines",
                context={"record_format": record_format}
            )
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = client

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _head_with_retry(self, client: httpx.AsyncClient, url: str, key: str) -> httpx.Response:
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = await client.head(url, timeout=self.timeout)
                error = classify_status(response.status_code, key, url)
                if error is None:
                    return response
                if not error.retryable:
                    raise error
                last_exception = error
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_exception = e

            if attempt < self.max_retries - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"Probe of {url} failed, retrying in {delay} seconds "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(delay)

        raise SourceUnavailableError(
            f"Probe failed after {self.max_retries} attempts",
            context={"partition_key": key, "url": url, "retry_count": self.max_retries},
            original_exception=last_exception
        )

    async def probe(self, key: str) -> str:
        url = self.location(key)
        try:
            async with self._client_context() as client:
                response = await self._head_with_retry(client, url, key)
        except (SourceError, httpx.HTTPError) as e:
            raise ProbeError(
                f"HEAD failed for {url}",
                context={"partition_key": key, "url": url},
                original_exception=e
            )

        etag = (response.headers.get("ETag") or "").strip('"')
        if etag:
            return f"etag={etag}"

        modified = response.headers.get("Last-Modified")
        length = response.headers.get("Content-Length")
        if modified is None and length is None:
            raise ProbeError(
                f"{url} exposes no ETag, Last-Modified or Content-Length",
                context={"partition_key": key, "url": url}
            )
        return f"modified={modified};size={length}"

    async def read(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        url = self.location(key)
        logger.info(f"Streaming partition {key} from {url}")

        try:
            async with self._client_context() as client:
                async with client.stream("GET", url, timeout=self.timeout) as response:
                    error = classify_status(response.status_code, key, url)
                    if error is not None:
                        raise error

                    async for record in decode_json_lines(response.aiter_lines(), key):
                        yield record
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise SourceUnavailableError(
                f"Stream interrupted for {url}",
                context={"partition_key": key, "url": url},
                original_exception=e
            )

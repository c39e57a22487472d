"""
S3 partition source using boto3.

boto3 is blocking, so every call runs in a worker thread. Object bodies are
consumed line by line (JSON lines) or in pandas chunks (CSV); a partition is
never held in memory as a whole.
"""

from typing import Any, AsyncIterator, Dict, Optional
import asyncio
import logging

import boto3
import pandas as pd
from botocore.exceptions import BotoCoreError, ClientError

from core.exceptions import (
    ProbeError,
    SourceAccessError,
    SourceError,
    SourceNotFoundError,
    SourceUnavailableError,
)
from core.s3_uri import parse_s3_uri
from ingestion.sources.base import (
    PartitionSource,
    csv_records,
    decode_json_lines,
    iterate_in_thread,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
ACCESS_CODES = {"401", "403", "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch"}


def create_s3_client(endpoint_url: Optional[str] = None, region_name: Optional[str] = None):
    """Create a boto3 S3 client; credentials come from the default chain"""
    session_kwargs = {}
    if region_name:
        session_kwargs["region_name"] = region_name
    session = boto3.session.Session(**session_kwargs)
    return session.client("s3", endpoint_url=endpoint_url)


def classify_s3_error(error: Exception, key: str, uri: str) -> SourceError:
    """Map boto3/botocore failures onto retryable and permanent source errors"""
    context = {"partition_key": key, "uri": uri}

    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        context.update({"error_code": code, "status_code": status})

        if code in NOT_FOUND_CODES:
            return SourceNotFoundError(f"Object not found: {uri}", context=context, original_exception=error)
        if code in ACCESS_CODES:
            return SourceAccessError(f"Access denied: {uri}", context=context, original_exception=error)
        if status is not None and status < 500 and code not in ("SlowDown", "RequestTimeout", "Throttling"):
            return SourceAccessError(f"Request rejected: {uri}", context=context, original_exception=error)
        return SourceUnavailableError(f"S3 server error for {uri}", context=context, original_exception=error)

    return SourceUnavailableError(f"S3 request failed for {uri}", context=context, original_exception=error)


class S3PartitionSource(PartitionSource):
    """
    Read partitions from S3 objects, e.g. ``s3://bucket/events/year={key}/part.jsonl``.

    Fingerprint: ETag, size and last-modified from HEAD Object.
    """

    def __init__(
        self,
        uri_template: str,
        record_format: str = "jsonl",
        batch_size: int = 500,
        s3_client=None
    ):
        super().__init__(uri_template, record_format, batch_size)
        # Validate the template eagerly so misconfiguration fails at startup
        parse_s3_uri(uri_template.format(key="probe"))
        self.s3_client = s3_client or create_s3_client()

    async def probe(self, key: str) -> str:
        uri = self.location(key)
        location = parse_s3_uri(uri)
        try:
            head = await asyncio.to_thread(
                self.s3_client.head_object, Bucket=location.bucket, Key=location.key
            )
        except (ClientError, BotoCoreError) as e:
            raise ProbeError(
                f"HEAD failed for {uri}",
                context={"partition_key": key, "uri": uri},
                original_exception=e
            )

        etag = str(head.get("ETag", "")).strip('"')
        size = head.get("ContentLength")
        modified = head.get("LastModified")
        modified = modified.isoformat() if hasattr(modified, "isoformat") else modified
        return f"etag={etag};size={size};modified={modified}"

    async def read(self, key: str) -> AsyncIterator[Dict[str, Any]]:
        uri = self.location(key)
        location = parse_s3_uri(uri)

        try:
            response = await asyncio.to_thread(
                self.s3_client.get_object, Bucket=location.bucket, Key=location.key
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_s3_error(e, key, uri)

        body = response["Body"]
        logger.info(f"Streaming partition {key} from {uri} ({response.get('ContentLength')} bytes)")

        try:
            if self.record_format == "csv":
                records = csv_records(
                    lambda **kwargs: pd.read_csv(body, **kwargs),
                    key,
                    self.batch_size
                )
                async for record in iterate_in_thread(records, self.batch_size):
                    yield record
            else:
                lines = iterate_in_thread(body.iter_lines(), self.batch_size)
                async for record in decode_json_lines(lines, key):
                    yield record
        except (ClientError, BotoCoreError, OSError) as e:
            raise classify_s3_error(e, key, uri)
        finally:
            body.close()

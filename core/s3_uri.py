"""S3 URI parsing shared by the S3 source and the S3 prefix enumerator."""

from typing import NamedTuple

from core.exceptions import ConfigurationError


class S3Location(NamedTuple):
    bucket: str
    key: str


def parse_s3_uri(uri: str, allow_empty_key: bool = False) -> S3Location:
    """
    Split ``s3://bucket/key`` into its parts.

    Raises:
        ConfigurationError: If the URI has no bucket (or no key when one is required)
    """
    if not uri.startswith("s3://"):
        raise ConfigurationError(f"Invalid S3 URI '{uri}': expected s3://bucket/key")

    stripped = uri[len("s3://"):]
    bucket, _, key = stripped.partition("/")
    if not bucket or (not key and not allow_empty_key):
        raise ConfigurationError(
            f"Invalid S3 URI '{uri}': expected s3://bucket/key",
            context={"uri": uri}
        )
    return S3Location(bucket=bucket, key=key)

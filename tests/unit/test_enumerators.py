"""
Partition enumerator tests
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import EndpointConnectionError

from core.exceptions import ConfigurationError, EnumerationError
from ingestion.enumerators import (
    LocalDirectoryEnumerator,
    S3PrefixEnumerator,
    SqlQueryEnumerator,
    StaticEnumerator,
)
from models.base import PartitionStatus
from schemas.partition import PartitionState


@pytest.mark.asyncio
async def test_static_enumerator_dedupes_preserving_order():
    enumerator = StaticEnumerator(["2021", "2020", "2021", "2022", "2020"])

    assert await enumerator.enumerate() == ["2021", "2020", "2022"]


@pytest.mark.asyncio
async def test_enumeration_is_not_cached():
    keys = ["2020"]
    enumerator = StaticEnumerator(keys)
    assert await enumerator.enumerate() == ["2020"]

    enumerator.keys.append("2021")
    assert await enumerator.enumerate() == ["2020", "2021"]


@pytest.mark.asyncio
async def test_local_directory_enumerator(tmp_path):
    for name in ("year=2022", "year=2020", "year=2021", "_tmp", "notes.txt"):
        (tmp_path / name).mkdir()

    enumerator = LocalDirectoryEnumerator(str(tmp_path), r"year=(\d{4})")

    assert await enumerator.enumerate() == ["2020", "2021", "2022"]


@pytest.mark.asyncio
async def test_local_directory_missing_raises(tmp_path):
    enumerator = LocalDirectoryEnumerator(str(tmp_path / "absent"), r"year=(\d{4})")

    with pytest.raises(EnumerationError):
        await enumerator.enumerate()


def test_pattern_requires_capture_group(tmp_path):
    with pytest.raises(ConfigurationError):
        LocalDirectoryEnumerator(str(tmp_path), r"year=\d{4}")


@pytest.mark.asyncio
async def test_s3_prefix_enumerator_lists_common_prefixes():
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {"CommonPrefixes": [{"Prefix": "measurements/year=2021/"}, {"Prefix": "measurements/year=2019/"}]},
        {"CommonPrefixes": [{"Prefix": "measurements/year=2020/"}], "Contents": [{"Key": "measurements/_SUCCESS"}]},
    ]
    client = MagicMock()
    client.get_paginator.return_value = paginator

    enumerator = S3PrefixEnumerator(client, "s3://lake/measurements", r"year=(\d{4})")
    keys = await enumerator.enumerate()

    assert keys == ["2019", "2020", "2021"]
    client.get_paginator.assert_called_once_with("list_objects_v2")
    paginator.paginate.assert_called_once_with(Bucket="lake", Prefix="measurements/", Delimiter="/")


@pytest.mark.asyncio
async def test_s3_listing_failure_becomes_enumeration_error():
    client = MagicMock()
    client.get_paginator.return_value.paginate.side_effect = EndpointConnectionError(endpoint_url="https://s3")

    enumerator = S3PrefixEnumerator(client, "s3://lake/measurements/", r"year=(\d{4})")

    with pytest.raises(EnumerationError) as exc_info:
        await enumerator.enumerate()

    assert exc_info.value.context["enumerator"] == "S3PrefixEnumerator"


@pytest.mark.asyncio
async def test_sql_query_enumerator_uses_first_column(test_engine, state_store):
    for key in ("2022", "2020", "2021"):
        await state_store.put(PartitionState(key=key, status=PartitionStatus.PENDING))

    enumerator = SqlQueryEnumerator(
        test_engine,
        "SELECT partition_key, status FROM partition_states ORDER BY partition_key DESC"
    )

    assert await enumerator.enumerate() == ["2022", "2021", "2020"]


@pytest.mark.asyncio
async def test_sql_query_failure_becomes_enumeration_error(test_engine):
    enumerator = SqlQueryEnumerator(test_engine, "SELECT year FROM no_such_table")

    with pytest.raises(EnumerationError):
        await enumerator.enumerate()


def test_sql_query_enumerator_requires_query():
    with pytest.raises(ConfigurationError):
        SqlQueryEnumerator(MagicMock(), "  ")

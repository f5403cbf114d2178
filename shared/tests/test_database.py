"""
Tests for database client.
"""

import pytest
from unittest.mock import AsyncMock, Mock, patch

from shared.database import DatabaseClient, AsyncTableQueryBuilder
from shared.errors import RetryableError, ConfigError


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    client = Mock()
    client.table = Mock(return_value=Mock())
    return client


@pytest.fixture
def db_client(mock_supabase_client):
    """Create a database client with mocked Supabase."""
    with patch("shared.database.create_client", return_value=mock_supabase_client):
        return DatabaseClient()


def chain(result):
    """A Supabase query mock whose filters return itself."""
    query = Mock()
    for method in ("select", "update", "insert", "upsert", "delete", "eq", "in_", "is_", "lt", "limit", "order"):
        getattr(query, method).return_value = query
    query.execute = Mock(return_value=result)
    return query


def test_database_client_initialization():
    with patch("shared.database.create_client") as mock_create:
        mock_create.return_value = Mock()

        client = DatabaseClient()

        assert client.client is mock_create.return_value
        mock_create.assert_called_once()


def test_database_client_initialization_failure():
    with patch("shared.database.create_client", side_effect=Exception("Connection failed")):
        with pytest.raises(ConfigError, match="Failed to initialize database client"):
            DatabaseClient()


@pytest.mark.asyncio
async def test_guarded_update_chain(db_client):
    """Filters are applied in order on the underlying query."""
    query = chain(Mock(data=[{"id": "job-1"}]))
    db_client.client.table = Mock(return_value=query)

    result = await (
        db_client.table("pipeline_jobs")
        .update({"status": "failed"})
        .eq("id", "job-1")
        .in_("status", ["queued", "processing"])
        .execute()
    )

    assert result.data == [{"id": "job-1"}]
    db_client.client.table.assert_called_once_with("pipeline_jobs")
    query.update.assert_called_once_with({"status": "failed"})
    query.in_.assert_called_once_with("status", ["queued", "processing"])


def test_builder_wraps_table(db_client):
    assert isinstance(db_client.table("batches"), AsyncTableQueryBuilder)


@pytest.mark.asyncio
@patch("shared.database.asyncio.sleep", new_callable=AsyncMock)
async def test_execute_retries_then_succeeds(mock_sleep, db_client):
    query = chain(None)
    query.execute = Mock(side_effect=[Exception("connection reset"), Mock(data=[])])
    db_client.client.table = Mock(return_value=query)

    result = await db_client.table("pipeline_jobs").select("*").execute()

    assert result.data == []
    assert query.execute.call_count == 2
    mock_sleep.assert_awaited_once_with(2)


@pytest.mark.asyncio
@patch("shared.database.asyncio.sleep", new_callable=AsyncMock)
async def test_execute_raises_retryable_after_attempts(mock_sleep, db_client):
    query = chain(None)
    query.execute = Mock(side_effect=Exception("down"))
    db_client.client.table = Mock(return_value=query)

    with pytest.raises(RetryableError, match="after 3 attempts"):
        await db_client.table("pipeline_jobs").select("*").execute()

    assert query.execute.call_count == 3


@pytest.mark.asyncio
async def test_rpc(db_client):
    db_client.client.rpc = Mock(return_value=Mock(execute=Mock(return_value=Mock(data=[{"total_jobs": 3}]))))

    result = await db_client.rpc("increment_batch_counters", {"p_batch_id": "b1"})

    assert result.data == [{"total_jobs": 3}]
    db_client.client.rpc.assert_called_once_with("increment_batch_counters", {"p_batch_id": "b1"})


@pytest.mark.asyncio
async def test_health_check(db_client):
    db_client.client.table = Mock(return_value=chain(Mock(data=[])))
    assert await db_client.health_check() is True


@pytest.mark.asyncio
async def test_health_check_failure(db_client):
    query = chain(None)
    query.execute = Mock(side_effect=Exception("down"))
    db_client.client.table = Mock(return_value=query)

    assert await db_client.health_check() is False

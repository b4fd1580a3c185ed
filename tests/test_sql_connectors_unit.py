"""
Unit tests for the SQLAlchemy-backed connectors, exercised against SQLite.
"""

import pytest
from sqlalchemy import text

from dataplane.connectors import (
    ConnectorFactory,
    PostgreSQLConnector,
    SnowflakeConnector,
    SQLiteConnector,
    SourceType,
)
from dataplane.connectors.database.sql import bind_params
from dataplane.connectors.models import ConnectionConfig, ConnectionStatus
from dataplane.errors import ConfigurationError, ConnectorConnectionError, QueryError


@pytest.fixture
def seeded(source_engine):
    with source_engine.begin() as conn:
        conn.execute(text("CREATE TABLE customers (id INTEGER PRIMARY KEY, name VARCHAR(100) NOT NULL)"))
        conn.execute(text(
            "CREATE TABLE orders (id INTEGER PRIMARY KEY, "
            "customer_id INTEGER REFERENCES customers(id), amount NUMERIC(10, 2), placed_at DATETIME)"
        ))
        conn.execute(text("INSERT INTO customers (id, name) VALUES (1, 'Acme'), (2, 'Globex'), (3, 'Initech')"))
        conn.execute(text("INSERT INTO orders (id, customer_id, amount) VALUES (1, 1, 10.5), (2, 2, 20)"))
    return source_engine


class TestSQLiteConnector:
    """Lifecycle, queries and introspection on SQLite."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, sqlite_config, seeded):
        """Test status transitions across connect and disconnect."""
        connector = SQLiteConnector(sqlite_config)
        assert connector.status == ConnectionStatus.DISCONNECTED

        await connector.connect()
        assert connector.is_connected
        assert await connector.ping()

        await connector.disconnect()
        assert connector.status == ConnectionStatus.DISCONNECTED
        assert not await connector.ping()

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, sqlite_config, seeded):
        """Test connecting an already connected instance raises."""
        async with SQLiteConnector(sqlite_config) as connector:
            with pytest.raises(ConnectorConnectionError):
                await connector.connect()

    @pytest.mark.asyncio
    async def test_query_requires_connection(self, sqlite_config):
        """Test queries on a closed connector raise."""
        connector = SQLiteConnector(sqlite_config)
        with pytest.raises(ConnectorConnectionError):
            await connector.execute_query("SELECT 1")

    @pytest.mark.asyncio
    async def test_execute_query_with_parameters(self, sqlite_config, seeded):
        """Test positional and named parameters bind."""
        async with SQLiteConnector(sqlite_config) as connector:
            positional = await connector.execute_query("SELECT name FROM customers WHERE id = $1", [2])
            named = await connector.execute_query("SELECT name FROM customers WHERE id = :id", {"id": 3})

        assert positional.rows == [{"name": "Globex"}]
        assert positional.columns == ["name"]
        assert named.scalar() == "Initech"
        assert connector.stats["total_queries"] == 2

    @pytest.mark.asyncio
    async def test_query_error_is_wrapped(self, sqlite_config, seeded):
        """Test driver errors surface as QueryError with a fatal verdict."""
        async with SQLiteConnector(sqlite_config) as connector:
            with pytest.raises(QueryError) as exc_info:
                await connector.execute_query("SELECT * FROM missing_table")

        assert exc_info.value.retryable is False
        assert exc_info.value.context["source_type"] == "sqlite"
        assert connector.stats["total_errors"] == 1

    @pytest.mark.asyncio
    async def test_streaming_query_chunks(self, sqlite_config, seeded):
        """Test streaming yields bounded chunks."""
        async with SQLiteConnector(sqlite_config) as connector:
            chunks = [c async for c in connector.execute_streaming_query("SELECT * FROM customers", chunk_size=2)]
        assert [len(c) for c in chunks] == [2, 1]

    @pytest.mark.asyncio
    async def test_introspection(self, sqlite_config, seeded):
        """Test tables, columns and foreign keys are reported canonically."""
        async with SQLiteConnector(sqlite_config) as connector:
            databases = await connector.list_databases()
            tables = await connector.list_tables()
            columns = await connector.list_columns("orders")
            foreign_keys = await connector.list_foreign_keys()
            version = await connector.get_version()

        assert [d.name for d in databases] == ["main"]
        assert {t.name for t in tables} == {"customers", "orders"}

        by_name = {c.name: c for c in columns}
        assert by_name["id"].primary_key
        assert by_name["id"].type == "number"
        assert by_name["amount"].type == "float"
        assert by_name["placed_at"].type == "datetime"
        assert by_name["customer_id"].foreign_key.table == "customers"

        assert len(foreign_keys) == 1
        fk = foreign_keys[0]
        assert (fk.from_table, fk.from_column, fk.to_table, fk.to_column) == ("orders", "customer_id", "customers", "id")
        assert version

    @pytest.mark.asyncio
    async def test_test_connection(self, sqlite_config, seeded):
        """Test a probe reports success and leaves the connector closed."""
        connector = SQLiteConnector(sqlite_config)
        result = await connector.test_connection()

        assert result.success
        assert result.version
        assert not connector.is_connected


class TestConnectorConfiguration:
    """Credential validation and the connector factory."""

    def test_missing_credentials(self):
        """Test required credentials are named when missing."""
        config = ConnectionConfig(id="pg", source_type=SourceType.POSTGRESQL, credentials={"host": "db"})
        with pytest.raises(ConfigurationError) as exc_info:
            PostgreSQLConnector.validate_config(config)
        assert "password" in str(exc_info.value)

    def test_url_satisfies_credentials(self):
        """Test a connection URL replaces individual credentials."""
        config = ConnectionConfig(
            id="pg", source_type=SourceType.POSTGRESQL,
            credentials={"url": "postgresql+psycopg2://app:secret@db:5432/analytics"},
        )
        PostgreSQLConnector.validate_config(config)

    def test_build_url_from_credentials(self):
        """Test URLs are assembled from the credential bundle."""
        config = ConnectionConfig(
            id="pg", source_type=SourceType.POSTGRESQL,
            credentials={"host": "db", "user": "app", "password": "secret", "database": "analytics"},
        )
        url = PostgreSQLConnector(config).build_url()
        assert url.host == "db"
        assert url.port == 5432
        assert url.database == "analytics"
        assert url.query["application_name"] == "dataplane"

    def test_mismatched_source_type(self):
        """Test a connector rejects configs for another source type."""
        config = ConnectionConfig(id="x", source_type=SourceType.SQLITE, credentials={"database": "x.db"})
        with pytest.raises(ConfigurationError):
            SnowflakeConnector.validate_config(config)

    def test_factory(self, sqlite_config):
        """Test the factory resolves registered types and rejects unknown ones."""
        assert isinstance(ConnectorFactory.create(sqlite_config), SQLiteConnector)
        assert {SourceType.SQLITE, SourceType.SALESFORCE, SourceType.SNOWFLAKE} <= set(ConnectorFactory.list_types())
        with pytest.raises(ConfigurationError):
            ConnectorFactory.get("oracle")

    def test_bind_params(self):
        """Test positional placeholders become named binds."""
        sql, params = bind_params("SELECT * FROM t WHERE a = $1 AND b = $2", ["x", 2])
        assert sql == "SELECT * FROM t WHERE a = :p1 AND b = :p2"
        assert params == {"p1": "x", "p2": 2}
        assert bind_params("SELECT 1", None) == ("SELECT 1", {})

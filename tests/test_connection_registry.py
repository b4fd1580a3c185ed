"""
Tests for the connection registry and the service facade's connection
lifecycle.
"""

import asyncio

import pytest

from dataplane.connectors.models import ConnectionConfig, SourceType
from dataplane.connectors.registry import ConnectionRegistry, StaticConfigStore
from dataplane.errors import ConfigurationError, ConnectorConnectionError, ConnectorError
from dataplane.notifications import EventType, RecordingNotifier
from dataplane.service import DataPlane


@pytest.fixture
def unreachable_config(tmp_path):
    return ConnectionConfig(
        id="broken",
        source_type=SourceType.SQLITE,
        credentials={"database": str(tmp_path / "missing" / "nowhere.db")},
    )


class TestConnectionRegistry:
    """Session lifecycle keyed by connection id."""

    @pytest.mark.asyncio
    async def test_resolve_reuses_connection(self, registry):
        """Test resolving twice returns the same open connector."""
        first = await registry.resolve("source")
        second = await registry.resolve("source")

        assert first is second
        assert first.is_connected
        assert registry.is_open("source")
        await registry.close()

    @pytest.mark.asyncio
    async def test_unknown_connection(self, registry):
        """Test unknown connection ids are configuration errors."""
        with pytest.raises(ConfigurationError):
            await registry.resolve("nope")

    @pytest.mark.asyncio
    async def test_disabled_connection(self, sqlite_config):
        """Test disabled connections refuse to open."""
        disabled = sqlite_config.model_copy(update={"enabled": False})
        registry = ConnectionRegistry(StaticConfigStore([disabled]))

        with pytest.raises(ConnectorConnectionError) as exc_info:
            await registry.resolve("source")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_concurrent_sessions_are_distinct(self, registry):
        """Test nested borrowers each get their own session."""
        async with registry.session("source") as a:
            async with registry.session("source") as b:
                assert a is not b
                assert a.is_connected and b.is_connected

        status = registry.status()["source"]
        assert status["sessions"] == 2
        assert status["idle"] == 2
        await registry.close()

    @pytest.mark.asyncio
    async def test_resident_session_is_never_lent(self, registry):
        """Test a borrower never receives the session returned by resolve()."""
        held = await registry.resolve("source")

        async with registry.session("source") as borrowed:
            assert borrowed is not held
            assert borrowed.is_connected

        async with registry.session("source") as again:
            assert again is not held

        status = registry.status()["source"]
        assert status["sessions"] == 2
        assert status["idle"] == 1
        await registry.close()
        assert not held.is_connected

    @pytest.mark.asyncio
    async def test_sessions_bounded_by_max_concurrency(self, registry):
        """Test a third borrower waits while two sessions are lent out."""

        async def borrow():
            async with registry.session("source"):
                pass

        async with registry.session("source"):
            async with registry.session("source"):
                with pytest.raises(asyncio.TimeoutError):
                    await asyncio.wait_for(borrow(), timeout=0.05)

        await borrow()
        await registry.close()

    @pytest.mark.asyncio
    async def test_release_disconnects(self, registry):
        """Test releasing a connection closes its sessions."""
        connector = await registry.resolve("source")
        await registry.release("source")

        assert not connector.is_connected
        assert not registry.is_open("source")
        assert registry.status() == {}

    @pytest.mark.asyncio
    async def test_failed_connect_is_not_cached(self, unreachable_config):
        """Test a connection that fails to open leaves nothing behind."""
        registry = ConnectionRegistry(StaticConfigStore([unreachable_config]))

        with pytest.raises(ConnectorError):
            await registry.resolve("broken")

        assert not registry.is_open("broken")
        assert registry.status() == {}

    @pytest.mark.asyncio
    async def test_probe_configuration(self, registry, sqlite_path):
        """Test probing a configuration reports success without registering it."""
        result = await registry.test_connection("sqlite", {"database": str(sqlite_path)})

        assert result.success
        assert result.version
        assert registry.status() == {}

    @pytest.mark.asyncio
    async def test_probe_invalid_configuration(self, registry):
        """Test probing bad configurations returns a failed result."""
        unknown = await registry.test_connection("oracle", {})
        missing = await registry.test_connection("postgresql", {"host": "db"})

        assert not unknown.success
        assert not missing.success
        assert missing.details["code"] == "INVALID_CONFIG"


class TestDataPlaneConnections:
    """Connection lifecycle through the service facade."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, config_store):
        """Test the facade opens and releases connections."""
        async with DataPlane(config_store) as dp:
            connector = await dp.connect("source")
            assert connector.is_connected

            await dp.disconnect("source")
            assert not connector.is_connected

    @pytest.mark.asyncio
    async def test_connect_failure_notifies(self, unreachable_config):
        """Test a failed connect is reported to the notifier and re-raised."""
        notifier = RecordingNotifier()
        dp = DataPlane(StaticConfigStore([unreachable_config]), notifier=notifier)

        with pytest.raises(ConnectorError):
            await dp.connect("broken")
        await dp.close()

        failures = notifier.of_type(EventType.CONNECTION_FAILED)
        assert len(failures) == 1
        assert failures[0].connection_id == "broken"
        assert "message" in failures[0].payload

    @pytest.mark.asyncio
    async def test_auth_config_merged_on_first_open(self, tmp_path):
        """Test supplied credentials override the stored bundle."""
        config = ConnectionConfig(
            id="local",
            source_type=SourceType.SQLITE,
            credentials={"database": str(tmp_path / "missing" / "x.db")},
        )
        async with DataPlane(StaticConfigStore([config])) as dp:
            connector = await dp.connect("local", {"database": str(tmp_path / "override.db")})
            assert connector.config.credentials["database"].endswith("override.db")

    @pytest.mark.asyncio
    async def test_connected_session_is_not_shared_with_borrowers(self, config_store):
        """Test engines borrowing the connection do not reuse the caller's session."""
        async with DataPlane(config_store) as dp:
            held = await dp.connect("source")

            async with dp.registry.session("source") as borrowed:
                assert borrowed is not held
            assert await dp.connect("source") is held

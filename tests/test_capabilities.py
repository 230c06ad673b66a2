"""Tests for SQL Server version detection and capabilities."""

import pytest

from mssql_mcp.capabilities.detector import (
    FEATURE_THRESHOLDS,
    CapabilityRegistry,
    detect,
    detect_server_capabilities,
    determine_capabilities,
    generate_capability_warning,
    parse_version,
)
from mssql_mcp.capabilities.models import ServerVersion
from mssql_mcp.database.client import MockSqlExecutor
from tests.conftest import SQL_SERVER_2014, SQL_SERVER_2019


class FailingExecutor(MockSqlExecutor):
    async def execute(self, sql, params=None):
        raise RuntimeError("connection reset")


class TestParseVersion:
    """Test version string parsing."""

    def test_sql_server_2019(self):
        version = parse_version(SQL_SERVER_2019)

        assert version.major == 15
        assert version.minor == 0
        assert version.build == 2000
        assert version.revision == 5
        assert version.full_version == "15.0.2000.5"
        assert version.product_name == "SQL Server 2019"

    def test_product_name_from_major_when_year_missing(self):
        version = parse_version("Some build 13.0.5026.0 on Windows")

        assert version.major == 13
        assert version.product_name == "SQL Server 2016"

    def test_unknown_major(self):
        assert parse_version("v 17.0.1.1").product_name == "SQL Server (version 17.x)"

    @pytest.mark.parametrize("raw", ["", "garbage", None])
    def test_unparseable_gives_baseline(self, raw):
        version = parse_version(raw)

        assert version.major == 10
        assert version.full_version == "10.0.0.0"


class TestCapabilities:
    """Test capability derivation."""

    def test_sql_server_2019(self):
        capabilities = detect(SQL_SERVER_2019)

        assert capabilities.supports_json is True
        assert capabilities.supports_utf8 is True
        assert capabilities.supports_graph_db is True
        assert capabilities.supports_drop_if_exists is True
        assert capabilities.supports_json_extensions is False

    def test_sql_server_2014(self):
        capabilities = detect(SQL_SERVER_2014)

        assert capabilities.supports_in_memory_oltp is True
        assert capabilities.supports_drop_if_exists is False
        assert capabilities.supports_json is False

    def test_unparseable_gives_only_basic_features(self):
        capabilities = detect("not a version")
        flags = capabilities.model_dump(exclude={"version"})

        assert flags.pop("supports_basic_features") is True
        assert not any(flags.values())

    def test_capabilities_are_monotonic_in_major(self):
        previous = None
        for major in range(9, 18):
            version = ServerVersion(
                major=major, full_version=f"{major}.0.0.0", product_name="x"
            )
            current = determine_capabilities(version).model_dump(exclude={"version"})
            if previous is not None:
                for feature, supported in previous.items():
                    if supported:
                        assert current[feature], feature
            previous = current

    def test_every_flag_has_a_threshold(self):
        flags = detect(SQL_SERVER_2019).model_dump(exclude={"version"})
        assert set(flags) == set(FEATURE_THRESHOLDS)

    def test_warning_text(self):
        warning = generate_capability_warning("STRING_AGG", "SQL Server 2017", "SQL Server 2014")

        assert "STRING_AGG" in warning
        assert "SQL Server 2017 or later" in warning
        assert "Current server: SQL Server 2014" in warning


class TestDetection:
    """Test probing the server."""

    @pytest.mark.asyncio
    async def test_detects_from_executor(self):
        executor = MockSqlExecutor(version_string=SQL_SERVER_2014)

        capabilities = await detect_server_capabilities(executor)

        assert capabilities.version.major == 12
        assert executor.executed[0][0] == "SELECT @@VERSION AS version"

    @pytest.mark.asyncio
    async def test_probe_failure_gives_baseline(self):
        capabilities = await detect_server_capabilities(FailingExecutor())

        assert capabilities.version.major == 10
        assert capabilities.supports_basic_features is True
        assert capabilities.supports_sequences is False

    @pytest.mark.asyncio
    async def test_empty_version_gives_baseline(self):
        capabilities = await detect_server_capabilities(MockSqlExecutor(version_string=None))

        assert capabilities.version.major == 10


class TestCapabilityRegistry:
    """Test the process-scoped capability cache."""

    @pytest.mark.asyncio
    async def test_detects_once(self):
        registry = CapabilityRegistry()
        executor = MockSqlExecutor(version_string=SQL_SERVER_2014)

        first = await registry.ensure(executor)
        executor.version_string = SQL_SERVER_2019
        second = await registry.ensure(executor)

        assert first.version.major == 12
        assert second is first
        assert len(executor.executed) == 1

    @pytest.mark.asyncio
    async def test_reset_forces_redetection(self):
        registry = CapabilityRegistry()
        executor = MockSqlExecutor(version_string=SQL_SERVER_2014)
        await registry.ensure(executor)

        registry.reset()
        executor.version_string = SQL_SERVER_2019

        assert registry.get() is None
        assert (await registry.ensure(executor)).version.major == 15

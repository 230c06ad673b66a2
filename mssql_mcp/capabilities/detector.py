"""SQL Server version detection and capability management.

Capabilities are a pure function of the major version. Detection runs once
per process and the result is cached in a CapabilityRegistry; when probing
fails the registry holds the oldest supported baseline, never nothing and
never the full feature set.
"""

import re
import threading
from typing import Dict, Optional

import structlog

from ..database.client import SqlExecutor
from .models import ServerCapabilities, ServerVersion

logger = structlog.get_logger(__name__)

BASELINE_MAJOR = 10

_VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)\.(\d+)\.(\d+)")
_PRODUCT_PATTERN = re.compile(r"Microsoft SQL Server (\d{4})")

PRODUCT_NAMES: Dict[int, str] = {
    16: "SQL Server 2022",
    15: "SQL Server 2019",
    14: "SQL Server 2017",
    13: "SQL Server 2016",
    12: "SQL Server 2014",
    11: "SQL Server 2012",
    10: "SQL Server 2008/2008 R2",
    9: "SQL Server 2005",
}

# Minimum major version for each capability flag
FEATURE_THRESHOLDS: Dict[str, int] = {
    "supports_basic_features": 10,
    "supports_sequences": 11,
    "supports_window_functions": 11,
    "supports_columnstore_indexes": 11,
    "supports_offset": 11,
    "supports_in_memory_oltp": 12,
    "supports_drop_if_exists": 13,
    "supports_json": 13,
    "supports_temporal": 13,
    "supports_always_encrypted": 13,
    "supports_string_agg": 14,
    "supports_graph_db": 14,
    "supports_utf8": 15,
    "supports_json_extensions": 16,
}


def baseline_version(label: str = "SQL Server 2008 (assumed)") -> ServerVersion:
    """The oldest supported server version."""
    return ServerVersion(
        major=BASELINE_MAJOR,
        minor=0,
        build=0,
        revision=0,
        full_version="10.0.0.0",
        product_name=label,
    )


def _product_name(version_string: str, major: int) -> str:
    name_match = _PRODUCT_PATTERN.search(version_string)
    if name_match:
        return f"SQL Server {name_match.group(1)}"
    return PRODUCT_NAMES.get(major, f"SQL Server (version {major}.x)")


def parse_version(version_string: str) -> ServerVersion:
    """Parse a SQL Server version string.

    Format: "Microsoft SQL Server 2019 (RTM) - 15.0.2000.5 ..."
    """
    match = _VERSION_PATTERN.search(version_string or "")
    if not match:
        logger.warning(
            "Could not parse SQL Server version, assuming SQL Server 2008",
            version_string=version_string,
        )
        return baseline_version()

    major, minor, build, revision = (int(part) for part in match.groups())
    return ServerVersion(
        major=major,
        minor=minor,
        build=build,
        revision=revision,
        full_version=match.group(0),
        product_name=_product_name(version_string, major),
    )


def determine_capabilities(version: ServerVersion) -> ServerCapabilities:
    """Determine server capabilities from its version."""
    flags = {
        feature: version.major >= threshold
        for feature, threshold in FEATURE_THRESHOLDS.items()
    }
    return ServerCapabilities(version=version, **flags)


def baseline_capabilities(label: str = "SQL Server 2008 (default)") -> ServerCapabilities:
    return determine_capabilities(baseline_version(label))


def detect(version_string: str) -> ServerCapabilities:
    """Derive capabilities from a raw version string."""
    return determine_capabilities(parse_version(version_string))


async def detect_server_capabilities(executor: SqlExecutor) -> ServerCapabilities:
    """Probe the server version and derive its capabilities.

    Any probing failure falls back to baseline capabilities.
    """
    try:
        version_string = await executor.fetch_version()
        if version_string:
            capabilities = detect(version_string)
            logger.info(
                "Detected SQL Server version",
                product_name=capabilities.version.product_name,
                version=capabilities.version.full_version,
                supports_drop_if_exists=capabilities.supports_drop_if_exists,
                supports_json=capabilities.supports_json,
                supports_string_agg=capabilities.supports_string_agg,
            )
            return capabilities
    except Exception as e:
        logger.error("Error detecting SQL Server version", error=str(e))

    logger.warning("Using default capabilities for SQL Server 2008")
    return baseline_capabilities()


def generate_capability_warning(
    feature_name: str, required_version: str, current_version: str
) -> str:
    """Generate a warning message for an unsupported feature."""
    return (
        f"⚠️  Feature '{feature_name}' requires {required_version} or later.\n"
        f"Current server: {current_version}\n"
        "This operation may fail or produce unexpected results."
    )


class CapabilityRegistry:
    """Process-scoped cache of the detected server capabilities."""

    def __init__(self) -> None:
        self._capabilities: Optional[ServerCapabilities] = None
        self._lock = threading.Lock()
        self.logger = structlog.get_logger(self.__class__.__name__)

    def get(self) -> Optional[ServerCapabilities]:
        with self._lock:
            return self._capabilities

    def set(self, capabilities: ServerCapabilities) -> None:
        with self._lock:
            self._capabilities = capabilities

    def reset(self) -> None:
        """Forget cached capabilities; the next connection re-detects."""
        with self._lock:
            self._capabilities = None

    async def ensure(self, executor: SqlExecutor) -> ServerCapabilities:
        """Detect once and cache; later calls return the cached value."""
        cached = self.get()
        if cached is not None:
            return cached

        capabilities = await detect_server_capabilities(executor)
        with self._lock:
            # A concurrent detection may have won the race
            if self._capabilities is None:
                self._capabilities = capabilities
            return self._capabilities


_registry = CapabilityRegistry()


def set_capability_registry(registry: CapabilityRegistry) -> CapabilityRegistry:
    """Swap the process registry, returning the previous one."""
    global _registry
    previous, _registry = _registry, registry
    return previous


def get_capabilities() -> Optional[ServerCapabilities]:
    """Cached capabilities, None before the first detection."""
    return _registry.get()


async def init_capabilities(executor: SqlExecutor) -> ServerCapabilities:
    return await _registry.ensure(executor)


def reset_capabilities() -> None:
    _registry.reset()

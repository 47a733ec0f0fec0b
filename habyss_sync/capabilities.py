"""Platform capabilities, decided once at startup and injected where needed."""

import logging
import sys
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

__all__ = [
    "Capabilities",
    "WidgetData",
    "WidgetBridge",
    "NoopWidgetBridge",
    "detect_capabilities",
    "widget_bridge_for",
]

logger = logging.getLogger(__name__)

# Platforms whose native bridges (HealthKit, Screen Time, WidgetKit) exist
_NATIVE_BRIDGE_PLATFORMS = {"ios"}


@dataclass(frozen=True)
class Capabilities:
    supports_health_sync: bool = False
    supports_screen_time_shield: bool = False
    supports_widgets: bool = False
    supports_local_store: bool = True


@dataclass
class WidgetData:
    """Snapshot shown by the home-screen widget."""

    total: int = 0
    completed: int = 0
    habits: list[dict] = field(default_factory=list)


@runtime_checkable
class WidgetBridge(Protocol):
    def update_timeline(self, data: WidgetData) -> None: ...


class NoopWidgetBridge:
    """Stands in for the widget bridge on platforms without widgets."""

    def update_timeline(self, data: WidgetData) -> None:
        logger.debug(f"Widgets unsupported, dropping update ({data.completed}/{data.total})")


def detect_capabilities(
    local_store_available: bool = True,
    platform_name: Optional[str] = None,
) -> Capabilities:
    """Detect what this runtime supports.

    Args:
        local_store_available: Result of ``LocalStore.is_available()``
        platform_name: Override for ``sys.platform`` (tests)
    """
    platform_name = (platform_name or sys.platform).lower()
    native = platform_name in _NATIVE_BRIDGE_PLATFORMS

    capabilities = Capabilities(
        supports_health_sync=native,
        supports_screen_time_shield=native,
        supports_widgets=native,
        supports_local_store=local_store_available,
    )
    logger.info(f"Capabilities on {platform_name}: {capabilities}")
    return capabilities


def widget_bridge_for(capabilities: Capabilities, bridge: Optional[WidgetBridge] = None) -> WidgetBridge:
    """Return the real bridge when widgets are supported, else a no-op."""
    if capabilities.supports_widgets and bridge is not None:
        return bridge
    return NoopWidgetBridge()

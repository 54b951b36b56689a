from render_server.system.capabilities import (
    ArchitectureClass,
    SystemCapabilities,
    conservative_defaults,
    detect_system,
)
from render_server.system.memory import MemoryMonitor, MemoryUsage

__all__ = [
    "ArchitectureClass",
    "SystemCapabilities",
    "conservative_defaults",
    "detect_system",
    "MemoryMonitor",
    "MemoryUsage",
]

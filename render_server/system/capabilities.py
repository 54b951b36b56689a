"""Host capability detection.

Produces a fresh snapshot per job so decisions reflect the current host load:
architecture class, memory, CPU and the hardware video accelerators exposed
by the local FFmpeg build. Detection is best-effort and never raises.
"""

import asyncio
import logging
import platform
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import psutil

from render_server.config import Settings, get_settings
from render_server.exceptions import CapabilityDetectionError

logger = logging.getLogger(__name__)

MB = 1024 * 1024

ACCEL_VIDEOTOOLBOX = "videotoolbox"
ACCEL_NVENC = "nvenc"
ACCEL_QSV = "qsv"


class ArchitectureClass(str, Enum):
    """CPU architecture class of the host."""

    ARM = "arm"  # efficient-core (Apple Silicon and friends)
    GENERAL = "general"


@dataclass(frozen=True)
class SystemCapabilities:
    """Immutable snapshot of host capabilities."""

    architecture: ArchitectureClass
    total_memory_mb: int
    free_memory_mb: int
    is_memory_constrained: bool
    accelerators: frozenset[str] = field(default_factory=frozenset)
    cpu_cores: int = 1
    cpu_model: str = "Unknown"
    cpu_load: float = 0.0
    platform: str = ""

    @property
    def is_arm(self) -> bool:
        return self.architecture == ArchitectureClass.ARM

    def has_accelerator(self, name: str) -> bool:
        return name in self.accelerators

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data = asdict(self)
        data["architecture"] = self.architecture.value
        data["accelerators"] = sorted(self.accelerators)
        return data


def conservative_defaults() -> SystemCapabilities:
    """Snapshot used when detection fails: constrained memory, no accelerators."""
    return SystemCapabilities(
        architecture=ArchitectureClass.GENERAL,
        total_memory_mb=8192,
        free_memory_mb=2048,
        is_memory_constrained=True,
        accelerators=frozenset(),
        cpu_cores=4,
        cpu_model="Unknown",
        cpu_load=0.0,
        platform=platform.system(),
    )


def get_container_memory_limit() -> int | None:
    """Detect the container memory limit from cgroup (Docker / Kubernetes).

    Returns:
        Memory limit in bytes, or None when there is no limit or it is unreadable.
    """
    for path in ("/sys/fs/cgroup/memory.max", "/sys/fs/cgroup/memory/memory.limit_in_bytes"):
        try:
            with open(path) as f:
                raw = f.read().strip()
        except (FileNotFoundError, PermissionError, OSError):
            continue
        if raw == "max":
            return None
        try:
            limit = int(raw)
        except ValueError:
            continue
        # cgroup v1 reports "unlimited" as a huge page-aligned number
        if 0 < limit < 1 << 60:
            return limit
    return None


def classify_architecture(machine: str) -> ArchitectureClass:
    machine = (machine or "").lower()
    if machine in ("arm64", "aarch64") or machine.startswith("armv"):
        return ArchitectureClass.ARM
    return ArchitectureClass.GENERAL


def parse_hwaccels(output: str, *, is_arm: bool) -> frozenset[str]:
    """Map ``ffmpeg -hwaccels`` output to the accelerators we can encode with."""
    methods = {line.strip().lower() for line in output.splitlines() if line.strip()}
    found: set[str] = set()
    if ACCEL_VIDEOTOOLBOX in methods:
        found.add(ACCEL_VIDEOTOOLBOX)
    if "cuda" in methods or "nvenc" in methods:
        found.add(ACCEL_NVENC)
    # QuickSync only exists on Intel hosts
    if not is_arm and ACCEL_QSV in methods:
        found.add(ACCEL_QSV)
    return frozenset(found)


async def _probe_hwaccels(ffmpeg_path: str, timeout_s: float) -> str:
    try:
        proc = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            "-hide_banner",
            "-hwaccels",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise CapabilityDetectionError(f"Cannot run {ffmpeg_path}: {e}") from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise CapabilityDetectionError("ffmpeg -hwaccels timed out") from e

    if proc.returncode != 0:
        raise CapabilityDetectionError(f"ffmpeg -hwaccels exited with code {proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


async def detect_system(settings: Settings | None = None) -> SystemCapabilities:
    """Detect host capabilities, falling back to conservative defaults."""
    settings = settings or get_settings()
    try:
        architecture = classify_architecture(platform.machine())

        vm = psutil.virtual_memory()
        total_bytes = vm.total
        container_limit = get_container_memory_limit()
        if container_limit is not None and container_limit < total_bytes:
            total_bytes = container_limit
        total_memory_mb = round(total_bytes / MB)
        free_memory_mb = round(min(vm.available, total_bytes) / MB)

        try:
            hwaccels = await _probe_hwaccels(settings.ffmpeg_path, settings.capability_probe_timeout_s)
            accelerators = parse_hwaccels(hwaccels, is_arm=architecture == ArchitectureClass.ARM)
        except CapabilityDetectionError as e:
            # Accelerator probing is optional; the rest of the snapshot is still valid
            logger.warning(f"[CAPABILITIES] Hardware accelerator detection failed: {e}")
            accelerators = frozenset()

        capabilities = SystemCapabilities(
            architecture=architecture,
            total_memory_mb=total_memory_mb,
            free_memory_mb=free_memory_mb,
            is_memory_constrained=total_memory_mb <= settings.memory_constrained_threshold_mb,
            accelerators=accelerators,
            cpu_cores=psutil.cpu_count() or 1,
            cpu_model=platform.processor() or "Unknown CPU",
            cpu_load=psutil.cpu_percent(interval=None),
            platform=platform.system(),
        )
    except Exception as e:
        logger.error(f"[CAPABILITIES] Failed to detect system capabilities: {e}")
        return conservative_defaults()

    logger.info(
        f"[CAPABILITIES] arch={capabilities.architecture.value}, "
        f"memory={capabilities.free_memory_mb}/{capabilities.total_memory_mb} MB, "
        f"constrained={capabilities.is_memory_constrained}, "
        f"accelerators={sorted(capabilities.accelerators)}"
    )
    return capabilities

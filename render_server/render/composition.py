"""Timeline duration and frame count for a composition."""

import logging
import math

from render_server.schemas.composition import Composition

logger = logging.getLogger(__name__)


def resolve_timeline_duration(composition: Composition, default_ms: float) -> float:
    """Resolve the authoritative timeline duration in milliseconds.

    Precedence:
    1. An explicit ``timelineDuration`` (> 0) overrides everything.
    2. Otherwise the maximum ``display.to`` across all items (> 0).
    3. Otherwise the composition-level ``duration``, then ``default_ms``.
    """
    if composition.timeline_duration and composition.timeline_duration > 0:
        logger.info(f"[TIMELINE] Using explicit timeline duration: {composition.timeline_duration}ms")
        return float(composition.timeline_duration)

    end_times = [
        item.display.to_ms
        for item in composition.track_items_map.values()
        if item.display is not None and item.display.to_ms
    ]
    max_end = max(end_times, default=0)
    if max_end > 0:
        if max_end != composition.duration:
            logger.info(
                f"[TIMELINE] Using duration calculated from track items: {max_end}ms "
                f"(composition duration: {composition.duration}ms)"
            )
        return float(max_end)

    if composition.duration and composition.duration > 0:
        return float(composition.duration)
    return float(default_ms)


def total_frame_count(duration_ms: float, fps: float) -> int:
    """Frames needed to cover ``duration_ms`` at ``fps``: ceil(seconds * fps)."""
    # Absorb float error before ceil (1.1 * 10 == 11.000000000000002)
    return math.ceil(round(duration_ms / 1000 * fps, 6))

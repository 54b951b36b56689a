"""
Audio mixing plan for the final encode.

This module handles:
- Resolving audio items from the composition into track descriptors
- Fetching each audio source into the job's scratch directory
- Building the FFmpeg filter graph that positions, stretches, scales,
  trims and mixes the tracks (typed nodes, rendered to text at the end)

Input 0 of the encoder is always the frame sequence, so audio inputs start
at index 1.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from render_server.config import Settings, get_settings
from render_server.schemas.composition import Composition
from render_server.services.asset_fetcher import AssetFetcher

logger = logging.getLogger(__name__)

FIRST_AUDIO_INPUT = 1
AUDIO_OUTPUT_LABEL = "audio"


def _fmt(value: float) -> str:
    """Format a number for a filter argument without float noise."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


# ============================================================================
# Filter graph records
# ============================================================================


@dataclass(frozen=True)
class FilterNode:
    """One filter, e.g. ``atrim=start=1:end=2``."""

    name: str
    positional: str | None = None
    options: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.name or not self.name.replace("_", "").isalnum():
            raise ValueError(f"Invalid filter name: {self.name!r}")

    @classmethod
    def of(cls, name: str, positional: str | None = None, **options: float | str) -> "FilterNode":
        rendered = tuple(
            (key, _fmt(value) if isinstance(value, (int, float)) else str(value))
            for key, value in options.items()
        )
        return cls(name=name, positional=positional, options=rendered)

    def render(self) -> str:
        parts: list[str] = []
        if self.positional is not None:
            parts.append(self.positional)
        parts.extend(f"{key}={value}" for key, value in self.options)
        return f"{self.name}={':'.join(parts)}" if parts else self.name


@dataclass(frozen=True)
class FilterChain:
    """Linear chain of filters from labelled inputs to one labelled output."""

    inputs: tuple[str, ...]
    nodes: tuple[FilterNode, ...]
    output: str

    def __post_init__(self) -> None:
        if not self.inputs:
            raise ValueError("Filter chain needs at least one input")
        if not self.nodes:
            raise ValueError("Filter chain needs at least one filter")
        if not self.output:
            raise ValueError("Filter chain needs an output label")

    def render(self) -> str:
        sources = "".join(f"[{label}]" for label in self.inputs)
        return f"{sources}{','.join(node.render() for node in self.nodes)}[{self.output}]"


@dataclass(frozen=True)
class FilterGraph:
    chains: tuple[FilterChain, ...]

    @property
    def output(self) -> str:
        return self.chains[-1].output

    def find(self, name: str) -> list[FilterNode]:
        return [node for chain in self.chains for node in chain.nodes if node.name == name]

    def render(self) -> str:
        return ";".join(chain.render() for chain in self.chains)


# ============================================================================
# Track descriptors
# ============================================================================


@dataclass(frozen=True)
class AudioTrackDescriptor:
    """Audio item resolved from the composition (times in seconds)."""

    id: str
    src: str
    start_offset_s: float
    duration_s: float
    trim_in_s: float = 0.0
    trim_out_s: float | None = None
    volume: float = 1.0
    playback_rate: float = 1.0
    name: str = ""

    @property
    def end_s(self) -> float:
        return self.start_offset_s + self.duration_s


def extract_audio_tracks(composition: Composition) -> list[AudioTrackDescriptor]:
    """Collect playable audio items in timeline order."""
    tracks: list[AudioTrackDescriptor] = []

    for item in composition.ordered_items():
        if item.type != "audio":
            continue
        src = item.details.get("src")
        if not src:
            continue

        display_from = item.display.from_ms if item.display and item.display.from_ms else 0
        display_to = item.display.to_ms if item.display and item.display.to_ms else None
        end_ms = display_to if display_to is not None else (item.duration or 0)
        duration_s = (end_ms - display_from) / 1000
        if duration_s <= 0:
            logger.warning(f"[AUDIO] Skipping audio item {item.id}: no playable duration")
            continue

        trim_in_ms = item.trim.from_ms if item.trim and item.trim.from_ms else 0
        trim_out_ms = item.trim.to_ms if item.trim and item.trim.to_ms else item.duration
        trim_out_s = trim_out_ms / 1000 if trim_out_ms and trim_out_ms > trim_in_ms else None

        volume_pct = item.details.get("volume")
        volume = (100.0 if volume_pct is None else float(volume_pct)) / 100
        rate = item.playback_rate if item.playback_rate and item.playback_rate > 0 else 1.0

        tracks.append(
            AudioTrackDescriptor(
                id=item.id,
                src=src,
                start_offset_s=display_from / 1000,
                duration_s=duration_s,
                trim_in_s=trim_in_ms / 1000,
                trim_out_s=trim_out_s,
                volume=max(volume, 0.0),
                playback_rate=rate,
                name=item.name or f"Audio {len(tracks) + 1}",
            )
        )

    return tracks


# ============================================================================
# Filter graph construction
# ============================================================================


def atempo_nodes(rate: float) -> list[FilterNode]:
    """atempo accepts 0.5-2.0 per instance; chain instances for larger changes."""
    if rate == 1.0:
        return []
    nodes: list[FilterNode] = []
    while rate > 2.0:
        nodes.append(FilterNode.of("atempo", _fmt(2.0)))
        rate /= 2.0
    while rate < 0.5:
        nodes.append(FilterNode.of("atempo", _fmt(0.5)))
        rate /= 0.5
    nodes.append(FilterNode.of("atempo", _fmt(rate)))
    return nodes


def build_track_chain(
    track: AudioTrackDescriptor,
    input_index: int,
    output_label: str,
    pad_to_s: float | None = None,
) -> FilterChain:
    """Build the filter chain for one track.

    Source trim -> tempo -> volume -> delay to start offset -> trim to the
    clip's end on the timeline -> optional pad to the total duration.
    """
    nodes: list[FilterNode] = []

    if track.trim_in_s > 0 or track.trim_out_s is not None:
        trim_options: dict[str, float] = {"start": track.trim_in_s}
        if track.trim_out_s is not None:
            trim_options["end"] = track.trim_out_s
        nodes.append(FilterNode.of("atrim", **trim_options))
        nodes.append(FilterNode.of("asetpts", "PTS-STARTPTS"))

    nodes.extend(atempo_nodes(track.playback_rate))
    nodes.append(FilterNode.of("volume", _fmt(track.volume)))

    delay_ms = round(track.start_offset_s * 1000)
    nodes.append(FilterNode.of("adelay", str(delay_ms), all=1))
    nodes.append(FilterNode.of("atrim", end=track.end_s))

    if pad_to_s is not None:
        nodes.append(FilterNode.of("apad", whole_dur=pad_to_s))

    return FilterChain(inputs=(f"{input_index}:a",), nodes=tuple(nodes), output=output_label)


def build_mix_graph(tracks: list[AudioTrackDescriptor], total_duration_s: float) -> FilterGraph | None:
    """Build the mixing graph, or None when there is nothing to mix."""
    if not tracks:
        return None

    if len(tracks) == 1:
        chain = build_track_chain(tracks[0], FIRST_AUDIO_INPUT, AUDIO_OUTPUT_LABEL, pad_to_s=total_duration_s)
        return FilterGraph(chains=(chain,))

    chains = [
        build_track_chain(track, FIRST_AUDIO_INPUT + index, f"a{index}")
        for index, track in enumerate(tracks)
    ]
    mix = FilterChain(
        inputs=tuple(chain.output for chain in chains),
        nodes=(
            FilterNode.of(
                "amix",
                inputs=len(tracks),
                duration="longest",
                dropout_transition=0,
                normalize=0,
            ),
            FilterNode.of("apad", whole_dur=total_duration_s),
        ),
        output=AUDIO_OUTPUT_LABEL,
    )
    return FilterGraph(chains=(*chains, mix))


# ============================================================================
# Plan
# ============================================================================


@dataclass(frozen=True)
class AudioMixPlan:
    """Encoder inputs and filter graph for the soundtrack."""

    input_args: tuple[str, ...]
    filter_graph: FilterGraph | None
    tracks: tuple[AudioTrackDescriptor, ...] = field(default_factory=tuple)
    total_duration_s: float = 0.0

    @property
    def is_silent(self) -> bool:
        return not self.tracks

    @property
    def filter_complex(self) -> str | None:
        return self.filter_graph.render() if self.filter_graph else None

    def map_args(self) -> list[str]:
        """Stream mapping: frames from input 0 plus the soundtrack."""
        if self.filter_graph is not None:
            return ["-map", "0:v", "-map", f"[{self.filter_graph.output}]"]
        return ["-map", "0:v", "-map", f"{FIRST_AUDIO_INPUT}:a", "-shortest"]


def silent_plan(total_duration_s: float, sample_rate: int) -> AudioMixPlan:
    return AudioMixPlan(
        input_args=(
            "-f", "lavfi",
            "-t", _fmt(total_duration_s),
            "-i", f"anullsrc=channel_layout=stereo:sample_rate={sample_rate}",
        ),
        filter_graph=None,
        total_duration_s=total_duration_s,
    )


class AudioMixingProcessor:
    """Resolves, fetches and plans the soundtrack of a composition."""

    def __init__(self, fetcher: AssetFetcher, settings: Settings | None = None):
        self.fetcher = fetcher
        self.settings = settings or get_settings()

    async def prepare(
        self,
        composition: Composition,
        scratch_dir: str,
        total_duration_ms: float,
        job_id: str = "",
    ) -> AudioMixPlan:
        """Fetch audio sources and build the mix plan.

        Raises:
            AssetDownloadError: If any source cannot be fetched
        """
        total_duration_s = total_duration_ms / 1000
        tracks = extract_audio_tracks(composition)
        logger.info(f"[AUDIO] Job {job_id}: found {len(tracks)} audio tracks")

        if not tracks:
            logger.info(f"[AUDIO] Job {job_id}: no audio tracks, using silent source")
            return silent_plan(total_duration_s, self.settings.render_audio_sample_rate)

        audio_dir = os.path.join(scratch_dir, "audio")
        os.makedirs(audio_dir, exist_ok=True)

        input_args: list[str] = []
        for index, track in enumerate(tracks):
            ext = os.path.splitext(urlparse(track.src).path)[1] or ".mp3"
            local_path = os.path.join(audio_dir, f"audio_{index}_{track.id}{ext}")
            await self.fetcher.fetch(track.src, local_path)
            input_args.extend(["-i", local_path])

        graph = build_mix_graph(tracks, total_duration_s)
        logger.info(f"[AUDIO] Job {job_id}: filter graph {graph.render() if graph else None}")
        return AudioMixPlan(
            input_args=tuple(input_args),
            filter_graph=graph,
            tracks=tuple(tracks),
            total_duration_s=total_duration_s,
        )

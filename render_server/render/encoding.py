"""
Encoder plan selection.

Picks the codec family from host capabilities, decides between one-pass and
two-pass encoding, and lays out the argument list of every encoder pass along
with the slice of the encoding phase each pass reports into.
"""

import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any

from render_server.config import Settings, get_settings
from render_server.render.audio_mixer import AudioMixPlan
from render_server.schemas.render import OutputOptions
from render_server.system.capabilities import (
    ACCEL_NVENC,
    ACCEL_QSV,
    ACCEL_VIDEOTOOLBOX,
    SystemCapabilities,
)

logger = logging.getLogger(__name__)

NULL_DEVICE = "NUL" if sys.platform == "win32" else "/dev/null"
PASSLOG_NAME = "ffmpeg2pass"

# Quality targets
HIGH_RES_CRF = 22
HIGH_RES_BITRATE_MBPS = 35
STANDARD_CRF = 20
STANDARD_BITRATE_MBPS = 15
NVENC_CQ = 20


class CodecFamily(str, Enum):
    VIDEOTOOLBOX = "videotoolbox"
    NVENC = "nvenc"
    QSV = "qsv"
    SOFTWARE = "software"


@dataclass(frozen=True)
class VideoCodec:
    name: str
    family: CodecFamily
    hwaccel_args: tuple[str, ...] = ()


H264_VIDEOTOOLBOX = VideoCodec("h264_videotoolbox", CodecFamily.VIDEOTOOLBOX, ("-hwaccel", "videotoolbox"))
H264_NVENC = VideoCodec("h264_nvenc", CodecFamily.NVENC)
H264_QSV = VideoCodec("h264_qsv", CodecFamily.QSV)
LIBX264 = VideoCodec("libx264", CodecFamily.SOFTWARE)


@dataclass(frozen=True)
class EncoderPass:
    """One encoder invocation and the slice (0-100) of the encoding phase it owns."""

    label: str
    args: tuple[str, ...]
    progress_start: float
    progress_end: float
    writes_output: bool
    output_path: str | None = None

    def __post_init__(self) -> None:
        if not self.args:
            raise ValueError(f"Encoder pass {self.label!r} has no arguments")
        if any(not isinstance(arg, str) or arg == "" for arg in self.args):
            raise ValueError(f"Encoder pass {self.label!r} has an empty or non-string argument")
        if not 0 <= self.progress_start < self.progress_end <= 100:
            raise ValueError(
                f"Invalid progress range for {self.label!r}: "
                f"{self.progress_start}-{self.progress_end}"
            )
        if self.writes_output and (not self.output_path or self.args[-1] != self.output_path):
            raise ValueError(f"Encoder pass {self.label!r} must end with its output path")


@dataclass(frozen=True)
class EncodingPlan:
    """Immutable encoder plan for one job."""

    codec: VideoCodec
    two_pass: bool
    passes: tuple[EncoderPass, ...]
    preset: str
    crf: int
    bitrate: str
    high_resolution: bool
    batch_size: int
    output_path: str
    passlog_prefix: str | None = None

    def __post_init__(self) -> None:
        expected = 2 if self.two_pass else 1
        if len(self.passes) != expected:
            raise ValueError(f"Expected {expected} encoder passes, got {len(self.passes)}")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

        if self.passes[0].progress_start != 0 or self.passes[-1].progress_end != 100:
            raise ValueError("Encoder passes must cover the whole encoding phase")
        for previous, current in zip(self.passes, self.passes[1:]):
            if current.progress_start != previous.progress_end:
                raise ValueError("Encoder pass progress ranges must be contiguous")

        *analysis, final = self.passes
        if not final.writes_output or final.output_path != self.output_path:
            raise ValueError("The last encoder pass must write the output file")
        if any(p.writes_output for p in analysis):
            raise ValueError("Only the last encoder pass may write the output file")

    @property
    def codec_name(self) -> str:
        # Two-pass always runs through x264 (its pass logs drive pass 2)
        return LIBX264.name if self.two_pass else self.codec.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "codec": self.codec_name,
            "codec_family": self.codec.family.value,
            "two_pass": self.two_pass,
            "preset": self.preset,
            "crf": self.crf,
            "bitrate": self.bitrate,
            "high_resolution": self.high_resolution,
            "batch_size": self.batch_size,
            "passes": [
                {
                    "label": p.label,
                    "progress_start": p.progress_start,
                    "progress_end": p.progress_end,
                    "writes_output": p.writes_output,
                }
                for p in self.passes
            ],
        }


def is_high_resolution(options: OutputOptions) -> bool:
    return options.width >= 3840 or options.height >= 2160 or "4K" in options.quality


def select_codec(capabilities: SystemCapabilities) -> VideoCodec:
    """Architecture-matched accelerator, then GPU, then media engine, then x264."""
    if capabilities.is_arm and capabilities.has_accelerator(ACCEL_VIDEOTOOLBOX):
        return H264_VIDEOTOOLBOX
    if capabilities.has_accelerator(ACCEL_NVENC):
        return H264_NVENC
    if capabilities.has_accelerator(ACCEL_QSV):
        return H264_QSV
    return LIBX264


def _mbps(value: float) -> str:
    return f"{value:g}M"


def codec_args(codec: VideoCodec, preset: str, crf: int, bitrate_mbps: int) -> list[str]:
    bitrate = _mbps(bitrate_mbps)
    if codec.family == CodecFamily.VIDEOTOOLBOX:
        return [
            "-c:v", codec.name,
            "-b:v", bitrate,
            "-maxrate", _mbps(bitrate_mbps * 1.5),
            "-bufsize", _mbps(bitrate_mbps * 2),
        ]
    if codec.family == CodecFamily.NVENC:
        return [
            "-c:v", codec.name,
            "-preset", "p7",
            "-rc", "vbr_hq",
            "-cq", str(NVENC_CQ),
            "-b:v", bitrate,
            "-maxrate", _mbps(bitrate_mbps * 1.5),
        ]
    if codec.family == CodecFamily.QSV:
        return [
            "-c:v", codec.name,
            "-preset", "veryslow" if preset == "slow" else "medium",
            "-b:v", bitrate,
        ]
    return ["-c:v", codec.name, "-preset", preset, "-crf", str(crf), "-tune", "film"]


class EncodingPlanner:
    """Builds the encoder plan for a job."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def build(
        self,
        capabilities: SystemCapabilities,
        options: OutputOptions,
        frame_pattern: str,
        audio_plan: AudioMixPlan,
        output_path: str,
        batch_size: int,
    ) -> EncodingPlan:
        """Build the plan.

        Args:
            capabilities: Capability snapshot taken when the job started
            options: Target dimensions, fps, quality tier and container
            frame_pattern: printf-style path of the numbered frame files
            audio_plan: Soundtrack inputs and filter graph
            output_path: Final container path (inside the job scratch dir)
            batch_size: Batch size used for extraction, recorded on the plan

        Raises:
            ValueError: If the resulting argument lists are malformed
        """
        high_res = is_high_resolution(options)
        constrained = capabilities.is_memory_constrained
        preset = "medium" if constrained else "slow"
        crf = HIGH_RES_CRF if high_res else STANDARD_CRF
        bitrate_mbps = HIGH_RES_BITRATE_MBPS if high_res else STANDARD_BITRATE_MBPS
        two_pass = high_res or constrained
        codec = select_codec(capabilities)

        frame_input = [
            "-framerate", str(options.fps),
            "-start_number", "0",
            "-i", frame_pattern,
        ]
        audio_args = self._audio_args(audio_plan)
        output_args = self._output_args(options, output_path)

        if two_pass:
            passlog = os.path.join(os.path.dirname(output_path), PASSLOG_NAME)
            bitrate = _mbps(bitrate_mbps)
            split = self.settings.two_pass_first_pass_end
            first = EncoderPass(
                label="pass1",
                args=tuple([
                    "-hide_banner",
                    *frame_input,
                    "-c:v", LIBX264.name,
                    "-preset", preset,
                    "-b:v", bitrate,
                    "-pass", "1",
                    "-passlogfile", passlog,
                    "-an",
                    "-f", "null",
                    "-y",
                    NULL_DEVICE,
                ]),
                progress_start=0,
                progress_end=split,
                writes_output=False,
            )
            second = EncoderPass(
                label="pass2",
                args=tuple([
                    "-hide_banner",
                    *frame_input,
                    *audio_args,
                    "-c:v", LIBX264.name,
                    "-preset", preset,
                    "-b:v", bitrate,
                    "-pass", "2",
                    "-passlogfile", passlog,
                    *output_args,
                ]),
                progress_start=split,
                progress_end=100,
                writes_output=True,
                output_path=output_path,
            )
            passes: tuple[EncoderPass, ...] = (first, second)
        else:
            passlog = None
            single = EncoderPass(
                label="single",
                args=tuple([
                    "-hide_banner",
                    *codec.hwaccel_args,
                    *frame_input,
                    *audio_args,
                    *codec_args(codec, preset, crf, bitrate_mbps),
                    *output_args,
                ]),
                progress_start=0,
                progress_end=100,
                writes_output=True,
                output_path=output_path,
            )
            passes = (single,)

        plan = EncodingPlan(
            codec=codec,
            two_pass=two_pass,
            passes=passes,
            preset=preset,
            crf=crf,
            bitrate=_mbps(bitrate_mbps),
            high_resolution=high_res,
            batch_size=batch_size,
            output_path=output_path,
            passlog_prefix=passlog,
        )
        logger.info(
            f"[ENCODE] Plan: codec={plan.codec_name} two_pass={two_pass} "
            f"preset={preset} crf={crf} bitrate={plan.bitrate} high_res={high_res}"
        )
        return plan

    @staticmethod
    def _audio_args(audio_plan: AudioMixPlan) -> list[str]:
        args = list(audio_plan.input_args)
        if audio_plan.filter_complex:
            args += ["-filter_complex", audio_plan.filter_complex]
        return args + audio_plan.map_args()

    def _output_args(self, options: OutputOptions, output_path: str) -> list[str]:
        args = [
            "-c:a", "aac",
            "-b:a", self.settings.render_audio_bitrate,
            "-pix_fmt", "yuv420p",
        ]
        if options.container_format in ("mp4", "mov"):
            args += ["-movflags", "+faststart"]
        return args + ["-y", output_path]

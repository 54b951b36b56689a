"""
Tests for encoder plan selection.

Test cases:
1. Codec family order (architecture-matched accelerator, GPU, media engine, software)
2. High-resolution quality targets and presets
3. Two-pass layout: analysis pass then output pass, contiguous progress ranges
4. Audio plan wiring (filter graph vs silent source)
5. Plan validation at construction
"""

import pytest

from render_server.render.audio_mixer import AudioTrackDescriptor, AudioMixPlan, build_mix_graph, silent_plan
from render_server.render.encoding import (
    NULL_DEVICE,
    CodecFamily,
    EncoderPass,
    EncodingPlan,
    EncodingPlanner,
    LIBX264,
    is_high_resolution,
)
from render_server.schemas.render import OutputOptions
from render_server.system.capabilities import ACCEL_NVENC, ACCEL_QSV, ACCEL_VIDEOTOOLBOX, ArchitectureClass

from conftest import make_capabilities

FRAMES = "/tmp/job/frames/element-%04d.jpeg"
OUTPUT = "/tmp/job/output.mp4"


def _value(args: tuple[str, ...], flag: str) -> str:
    return args[args.index(flag) + 1]


@pytest.fixture
def planner(settings) -> EncodingPlanner:
    return EncodingPlanner(settings)


@pytest.fixture
def audio_plan() -> AudioMixPlan:
    tracks = [AudioTrackDescriptor(id="a", src="a.mp3", start_offset_s=0, duration_s=3)]
    return AudioMixPlan(
        input_args=("-i", "/tmp/job/audio/audio_0_a.mp3"),
        filter_graph=build_mix_graph(tracks, 10.0),
        tracks=tuple(tracks),
        total_duration_s=10.0,
    )


class TestCodecSelection:
    def test_1080p_unconstrained_software(self, planner, audio_plan):
        plan = planner.build(make_capabilities(), OutputOptions(), FRAMES, audio_plan, OUTPUT, 30)

        assert plan.two_pass is False
        assert plan.codec == LIBX264
        assert plan.preset == "slow"
        assert plan.crf == 20
        [single] = plan.passes
        assert _value(single.args, "-c:v") == "libx264"
        assert _value(single.args, "-preset") == "slow"
        assert _value(single.args, "-crf") == "20"
        assert _value(single.args, "-tune") == "film"
        assert (single.progress_start, single.progress_end) == (0, 100)

    def test_arm_with_videotoolbox(self, planner, audio_plan):
        caps = make_capabilities(accelerators=(ACCEL_VIDEOTOOLBOX,), architecture=ArchitectureClass.ARM)
        [single] = planner.build(caps, OutputOptions(), FRAMES, audio_plan, OUTPUT, 30).passes

        assert single.args[1:3] == ("-hwaccel", "videotoolbox")
        assert _value(single.args, "-c:v") == "h264_videotoolbox"
        assert _value(single.args, "-b:v") == "15M"
        assert _value(single.args, "-maxrate") == "22.5M"
        assert _value(single.args, "-bufsize") == "30M"

    def test_videotoolbox_needs_arm(self, planner, audio_plan):
        caps = make_capabilities(accelerators=(ACCEL_VIDEOTOOLBOX,))
        plan = planner.build(caps, OutputOptions(), FRAMES, audio_plan, OUTPUT, 30)
        assert plan.codec.family == CodecFamily.SOFTWARE

    def test_nvenc_preferred_over_qsv(self, planner, audio_plan):
        caps = make_capabilities(accelerators=(ACCEL_NVENC, ACCEL_QSV))
        [single] = planner.build(caps, OutputOptions(), FRAMES, audio_plan, OUTPUT, 30).passes

        assert _value(single.args, "-c:v") == "h264_nvenc"
        assert _value(single.args, "-preset") == "p7"
        assert _value(single.args, "-rc") == "vbr_hq"
        assert _value(single.args, "-cq") == "20"
        assert _value(single.args, "-maxrate") == "22.5M"

    def test_qsv_slow_maps_to_veryslow(self, planner, audio_plan):
        caps = make_capabilities(accelerators=(ACCEL_QSV,))
        [single] = planner.build(caps, OutputOptions(), FRAMES, audio_plan, OUTPUT, 30).passes

        assert _value(single.args, "-c:v") == "h264_qsv"
        assert _value(single.args, "-preset") == "veryslow"
        assert _value(single.args, "-b:v") == "15M"


class TestQualityAndPasses:
    @pytest.mark.parametrize(
        "width, height, quality, expected",
        [
            (3840, 2160, "4K (2160p)", True),
            (3840, 1600, "custom", True),
            (2880, 2160, "custom", True),
            (1920, 1080, "4K (2160p)", True),
            (1920, 1080, "Full HD (1080p)", False),
        ],
    )
    def test_high_resolution(self, width, height, quality, expected):
        assert is_high_resolution(OutputOptions(width=width, height=height, quality=quality)) is expected

    def test_4k_constrained_two_pass(self, planner, audio_plan):
        options = OutputOptions(width=3840, height=2160, quality="4K (2160p)")
        plan = planner.build(make_capabilities(constrained=True), options, FRAMES, audio_plan, OUTPUT, 10)

        assert plan.two_pass is True
        assert plan.batch_size == 10
        assert plan.preset == "medium"
        assert plan.crf == 22
        assert plan.bitrate == "35M"
        first, second = plan.passes

        assert first.writes_output is False
        assert (first.progress_start, first.progress_end) == (0, 45)
        assert _value(first.args, "-c:v") == "libx264"
        assert _value(first.args, "-b:v") == "35M"
        assert _value(first.args, "-pass") == "1"
        assert _value(first.args, "-passlogfile") == "/tmp/job/ffmpeg2pass"
        assert "-an" in first.args
        assert first.args[-1] == NULL_DEVICE
        assert "-filter_complex" not in first.args

        assert second.writes_output is True
        assert (second.progress_start, second.progress_end) == (45, 100)
        assert _value(second.args, "-c:v") == "libx264"
        assert _value(second.args, "-pass") == "2"
        assert _value(second.args, "-filter_complex") == audio_plan.filter_complex
        assert second.args[-1] == OUTPUT

    def test_constrained_1080p_is_two_pass(self, planner, audio_plan):
        plan = planner.build(make_capabilities(constrained=True), OutputOptions(), FRAMES, audio_plan, OUTPUT, 15)
        assert plan.two_pass is True
        assert plan.crf == 20
        assert plan.bitrate == "15M"

    def test_two_pass_ignores_hardware_codec(self, planner, audio_plan):
        caps = make_capabilities(constrained=True, accelerators=(ACCEL_NVENC,))
        plan = planner.build(caps, OutputOptions(), FRAMES, audio_plan, OUTPUT, 15)

        assert plan.codec_name == "libx264"
        assert all(_value(p.args, "-c:v") == "libx264" for p in plan.passes)

    def test_common_input_and_output_args(self, planner, audio_plan):
        [single] = planner.build(make_capabilities(), OutputOptions(fps=24), FRAMES, audio_plan, OUTPUT, 30).passes

        assert _value(single.args, "-framerate") == "24"
        assert _value(single.args, "-start_number") == "0"
        assert _value(single.args, "-i") == FRAMES
        assert _value(single.args, "-pix_fmt") == "yuv420p"
        assert _value(single.args, "-movflags") == "+faststart"
        assert _value(single.args, "-c:a") == "aac"
        assert _value(single.args, "-b:a") == "128k"
        assert single.args[-2:] == ("-y", OUTPUT)

    def test_silent_audio_wiring(self, planner):
        [single] = planner.build(
            make_capabilities(), OutputOptions(), FRAMES, silent_plan(10.0, 48000), OUTPUT, 30
        ).passes

        assert "-filter_complex" not in single.args
        assert "anullsrc=channel_layout=stereo:sample_rate=48000" in single.args
        assert "-shortest" in single.args
        assert _value(single.args, "-map") == "0:v"

    def test_mkv_has_no_faststart(self, planner, audio_plan):
        options = OutputOptions(container_format="mkv")
        [single] = planner.build(make_capabilities(), options, FRAMES, audio_plan, "/tmp/job/out.mkv", 30).passes
        assert "-movflags" not in single.args


class TestPlanValidation:
    def test_pass_range_must_be_ordered(self):
        with pytest.raises(ValueError):
            EncoderPass(label="bad", args=("-i", "x"), progress_start=50, progress_end=50, writes_output=False)

    def test_output_pass_must_end_with_path(self):
        with pytest.raises(ValueError):
            EncoderPass(
                label="bad",
                args=("-i", "x", "/tmp/other.mp4"),
                progress_start=0,
                progress_end=100,
                writes_output=True,
                output_path=OUTPUT,
            )

    def test_empty_argument_rejected(self):
        with pytest.raises(ValueError):
            EncoderPass(label="bad", args=("-i", ""), progress_start=0, progress_end=100, writes_output=False)

    def test_two_pass_needs_two_passes(self):
        single = EncoderPass(
            label="single",
            args=("-i", "x", OUTPUT),
            progress_start=0,
            progress_end=100,
            writes_output=True,
            output_path=OUTPUT,
        )
        with pytest.raises(ValueError):
            EncodingPlan(
                codec=LIBX264,
                two_pass=True,
                passes=(single,),
                preset="slow",
                crf=20,
                bitrate="15M",
                high_resolution=False,
                batch_size=30,
                output_path=OUTPUT,
            )

    def test_ranges_must_be_contiguous(self):
        first = EncoderPass(label="pass1", args=("-i", "x"), progress_start=0, progress_end=40, writes_output=False)
        second = EncoderPass(
            label="pass2",
            args=("-i", "x", OUTPUT),
            progress_start=45,
            progress_end=100,
            writes_output=True,
            output_path=OUTPUT,
        )
        with pytest.raises(ValueError):
            EncodingPlan(
                codec=LIBX264,
                two_pass=True,
                passes=(first, second),
                preset="slow",
                crf=20,
                bitrate="15M",
                high_resolution=False,
                batch_size=30,
                output_path=OUTPUT,
            )

from render_server.render.audio_mixer import AudioMixingProcessor, AudioMixPlan, AudioTrackDescriptor
from render_server.render.encoding import EncoderPass, EncodingPlan, EncodingPlanner
from render_server.render.extraction import (
    FrameExtractionOrchestrator,
    FrameRenderer,
    SubprocessFrameRenderer,
    select_batch_size,
)
from render_server.render.process_runner import EncoderRunner, FFmpegProgressParser
from render_server.render.progress import ProgressTracker

__all__ = [
    "AudioMixingProcessor",
    "AudioMixPlan",
    "AudioTrackDescriptor",
    "EncoderPass",
    "EncodingPlan",
    "EncodingPlanner",
    "FrameExtractionOrchestrator",
    "FrameRenderer",
    "SubprocessFrameRenderer",
    "select_batch_size",
    "EncoderRunner",
    "FFmpegProgressParser",
    "ProgressTracker",
]

"""
Encoder subprocess execution.

FFmpeg only reports progress as human-readable text on stderr, so parsing is
isolated in ``FFmpegProgressParser``; ``EncoderRunner`` owns the process,
maps parsed progress into the pass's slice of the encoding phase, and turns
failures into ``EncodingError`` with a bounded diagnostic tail.
"""

import asyncio
import codecs
import logging
import os
import re
from collections import deque
from collections.abc import Callable

from render_server.config import Settings, get_settings
from render_server.exceptions import EncodingError
from render_server.render.encoding import EncoderPass

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
LINE_SPLIT_RE = re.compile(r"[\r\n]")

READ_CHUNK_SIZE = 4096

ProgressCallback = Callable[[float], None]


def _seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FFmpegProgressParser:
    """Parses ``Duration:`` (first one only) and ``time=`` markers.

    Feed it raw text in any chunking; lines may end with ``\\n`` or ``\\r``
    (FFmpeg rewrites its status line in place with carriage returns).
    """

    def __init__(self, expected_duration_s: float | None = None):
        self.expected_duration_s = expected_duration_s
        self.duration_s: float | None = None
        self.current_time_s = 0.0
        self._partial = ""

    @property
    def total_duration_s(self) -> float | None:
        return self.duration_s or self.expected_duration_s

    def feed(self, text: str) -> float | None:
        """Consume text; return the new completion ratio (0-1) if it changed."""
        updated = False
        *lines, self._partial = LINE_SPLIT_RE.split(self._partial + text)
        for line in lines:
            updated = self._parse_line(line) or updated
        if updated:
            return self.ratio
        return None

    def flush(self) -> float | None:
        line, self._partial = self._partial, ""
        return self.ratio if self._parse_line(line) else None

    @property
    def ratio(self) -> float | None:
        total = self.total_duration_s
        if not total:
            return None
        return min(max(self.current_time_s / total, 0.0), 1.0)

    def _parse_line(self, line: str) -> bool:
        if self.duration_s is None:
            match = DURATION_RE.search(line)
            if match:
                seconds = _seconds(*match.groups())
                if seconds > 0:
                    self.duration_s = seconds
        updated = False
        for match in TIME_RE.finditer(line):
            self.current_time_s = _seconds(*match.groups())
            updated = True
        return updated


class DiagnosticTail:
    """Keeps only the last ``limit`` characters of a stream."""

    def __init__(self, limit: int):
        self._chars: deque[str] = deque(maxlen=limit)

    def append(self, text: str) -> None:
        self._chars.extend(text)

    @property
    def text(self) -> str:
        return "".join(self._chars).strip()


async def terminate_process(proc: asyncio.subprocess.Process, timeout_s: float) -> None:
    """SIGTERM, wait up to ``timeout_s``, then SIGKILL."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning(f"[PROCESS] pid {proc.pid} ignored SIGTERM for {timeout_s}s, killing")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


class EncoderRunner:
    """Runs one encoder pass and reports its progress."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def run(
        self,
        encoder_pass: EncoderPass,
        on_progress: ProgressCallback | None = None,
        expected_duration_s: float | None = None,
    ) -> None:
        """Run the pass to completion.

        ``on_progress`` receives the encoding-phase percentage, monotonic and
        within ``[progress_start, progress_end]``; the end of the range is
        always reported on success.

        Raises:
            EncodingError: Spawn failure, non-zero exit, or missing/empty output
        """
        cmd = [self.settings.ffmpeg_path, *encoder_pass.args]
        logger.info(f"[ENCODE] Running {encoder_pass.label}: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodingError(f"Failed to start encoder '{self.settings.ffmpeg_path}': {e}") from e

        parser = FFmpegProgressParser(expected_duration_s)
        tail = DiagnosticTail(self.settings.encoder_error_tail_chars)
        last_reported = encoder_pass.progress_start
        span = encoder_pass.progress_end - encoder_pass.progress_start

        def report(ratio: float | None) -> None:
            nonlocal last_reported
            if ratio is None:
                return
            pct = min(encoder_pass.progress_start + ratio * span, encoder_pass.progress_end)
            if pct > last_reported:
                last_reported = pct
                if on_progress:
                    on_progress(pct)

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await proc.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                tail.append(text)
                report(parser.feed(text))
            report(parser.flush())
            returncode = await proc.wait()
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                logger.info(f"[ENCODE] {encoder_pass.label} cancelled, stopping encoder pid {proc.pid}")
            else:
                logger.warning(f"[ENCODE] {encoder_pass.label}: {e!r}, stopping encoder pid {proc.pid}")
            await terminate_process(proc, self.settings.process_kill_timeout_s)
            raise

        if returncode != 0:
            logger.error(f"[ENCODE] {encoder_pass.label} failed with exit code {returncode}")
            raise EncodingError(
                f"FFmpeg process exited with code {returncode}",
                exit_code=returncode,
                diagnostic_tail=tail.text,
            )

        if encoder_pass.writes_output:
            output_path = encoder_pass.output_path
            if not output_path or not os.path.exists(output_path):
                raise EncodingError("Encoder did not create the output file", exit_code=0, diagnostic_tail=tail.text)
            if os.path.getsize(output_path) == 0:
                raise EncodingError("Encoder produced an empty output file", exit_code=0, diagnostic_tail=tail.text)

        if last_reported < encoder_pass.progress_end and on_progress:
            on_progress(encoder_pass.progress_end)
        logger.info(f"[ENCODE] {encoder_pass.label} finished")

"""
Build command runner with interleaved transcript capture.

stdout (primary) and stderr (secondary) are read by two independent
threads. Each line is tagged with its arrival time and stream, appended
to a shared sink, and the sink is merged by arrival time once the child
exits. Arrival order is a best-effort approximation of the true
interleaving: the host buffers the two pipes independently.

Tie-break for identical timestamps: stdout before stderr, then the
order lines arrived on their own stream.
"""

import logging
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import IO

from .errors import BuildFailure, ErrorCode

logger = logging.getLogger(__name__)


STDOUT = "stdout"
STDERR = "stderr"
_STREAM_RANK = {STDOUT: 0, STDERR: 1}


@dataclass(frozen=True)
class TranscriptLine:
    timestamp_ns: int
    stream: str
    sequence: int
    text: str

    def sort_key(self) -> tuple[int, int, int]:
        return (self.timestamp_ns, _STREAM_RANK[self.stream], self.sequence)


@dataclass
class Transcript:
    """Ordered, stream-tagged record of one build command's output."""
    started_ns: int
    lines: list[TranscriptLine] = field(default_factory=list)
    exit_code: int | None = None

    def render(self) -> str:
        """Text form written to transcript.txt: one line per event."""
        out = []
        for line in self.lines:
            offset = (line.timestamp_ns - self.started_ns) / 1e9
            out.append(f"+{offset:.6f}s [{line.stream}] {line.text}\n")
        return "".join(out)


class _TranscriptSink:
    """Thread-safe collector for lines arriving from both reader threads."""

    def __init__(self, echo: bool = False):
        self._lock = threading.Lock()
        self._lines: list[TranscriptLine] = []
        self._echo = echo

    def add(self, stream: str, sequence: int, text: str) -> None:
        line = TranscriptLine(time.monotonic_ns(), stream, sequence, text)
        with self._lock:
            self._lines.append(line)
            if self._echo:
                sys.stderr.write(text + "\n")
                sys.stderr.flush()

    def merged(self) -> list[TranscriptLine]:
        with self._lock:
            return sorted(self._lines, key=TranscriptLine.sort_key)


def _pump(pipe: IO[bytes], stream: str, sink: _TranscriptSink) -> None:
    with pipe:
        for sequence, raw in enumerate(iter(pipe.readline, b"")):
            sink.add(stream, sequence, raw.decode("utf-8", errors="replace").rstrip("\r\n"))


def run_command(
    argv: list[str],
    cwd=None,
    env: dict[str, str] | None = None,
    echo: bool = False,
) -> Transcript:
    """
    Run the build command and capture an interleaved transcript.

    Args:
        argv: Command and arguments (no shell)
        cwd: Working directory for the child
        env: Full child environment, or None to inherit
        echo: Mirror output lines to our stderr as they arrive

    Returns:
        Transcript with merged lines and exit code 0

    Raises:
        BuildFailure: If the command cannot start or exits non-zero
    """
    if not argv:
        raise BuildFailure("No build command specified")

    started_ns = time.monotonic_ns()
    try:
        child = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise BuildFailure(
            f"Cannot start build command {argv[0]}: {exc}",
            details={"argv": list(argv)},
        ) from exc

    sink = _TranscriptSink(echo=echo)
    readers = [
        threading.Thread(target=_pump, args=(child.stdout, STDOUT, sink), daemon=True),
        threading.Thread(target=_pump, args=(child.stderr, STDERR, sink), daemon=True),
    ]
    for reader in readers:
        reader.start()

    exit_code = child.wait()
    for reader in readers:
        reader.join()

    transcript = Transcript(started_ns=started_ns, lines=sink.merged(), exit_code=exit_code)
    logger.info("Build command exited %d (%d transcript lines)", exit_code, len(transcript.lines))

    if exit_code != 0:
        raise BuildFailure(
            f"Build command failed with exit code {exit_code}",
            code=ErrorCode.BUILD_FAILED,
            details={"argv": list(argv), "exit_code": exit_code},
        )
    return transcript

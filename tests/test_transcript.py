"""Build command runner and transcript tests."""

import sys

import pytest

from build_witness import BuildFailure, ErrorCode
from build_witness.transcript import STDERR, STDOUT, Transcript, TranscriptLine, run_command


def python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_both_streams_are_tagged():
    transcript = run_command(python(
        "import sys; print('to out'); sys.stdout.flush(); print('to err', file=sys.stderr)"
    ))

    tagged = {(line.stream, line.text) for line in transcript.lines}
    assert (STDOUT, "to out") in tagged
    assert (STDERR, "to err") in tagged
    assert transcript.exit_code == 0


def test_order_within_a_stream_is_preserved():
    transcript = run_command(python(
        "import sys\n"
        "for i in range(50):\n"
        "    print(f'out {i}')\n"
        "    print(f'err {i}', file=sys.stderr)\n"
    ))

    out = [line.text for line in transcript.lines if line.stream == STDOUT]
    err = [line.text for line in transcript.lines if line.stream == STDERR]
    assert out == [f"out {i}" for i in range(50)]
    assert err == [f"err {i}" for i in range(50)]


def test_non_zero_exit():
    with pytest.raises(BuildFailure) as exc_info:
        run_command(python("import sys; print('partial'); sys.exit(3)"))

    assert exc_info.value.code is ErrorCode.BUILD_FAILED
    assert exc_info.value.details["exit_code"] == 3


def test_command_not_found(tmp_path):
    with pytest.raises(BuildFailure):
        run_command([str(tmp_path / "no-such-build-tool")])


def test_empty_command():
    with pytest.raises(BuildFailure):
        run_command([])


def test_cwd_and_env(tmp_path):
    transcript = run_command(
        python("import os; print(os.getcwd()); print(os.environ['WITNESS_MARKER'])"),
        cwd=tmp_path,
        env={"WITNESS_MARKER": "marker-value"},
    )
    texts = [line.text for line in transcript.lines]
    assert texts[-1] == "marker-value"


def test_render_format():
    transcript = Transcript(
        started_ns=1_000_000_000,
        lines=[
            TranscriptLine(1_500_000_000, STDOUT, 0, "compiling"),
            TranscriptLine(2_000_000_000, STDERR, 0, "warning: unused"),
        ],
        exit_code=0,
    )
    assert transcript.render() == (
        "+0.500000s [stdout] compiling\n"
        "+1.000000s [stderr] warning: unused\n"
    )


def test_empty_transcript_renders_empty():
    assert Transcript(started_ns=0).render() == ""


def test_tie_break_order():
    """Same timestamp: stdout first, then arrival order within a stream."""
    lines = [
        TranscriptLine(10, STDERR, 0, "e0"),
        TranscriptLine(10, STDOUT, 1, "o1"),
        TranscriptLine(10, STDOUT, 0, "o0"),
        TranscriptLine(5, STDERR, 1, "early"),
    ]
    ordered = [line.text for line in sorted(lines, key=TranscriptLine.sort_key)]
    assert ordered == ["early", "o0", "o1", "e0"]

import asyncio
import logging
import os
import stat
from pathlib import Path

import pytest

from ffmerge.encoder import (
    DIAGNOSTIC_TAIL_CHARS,
    EncodeParams,
    FFmpegEncoder,
    FFmpegProgressParser,
    build_merge_command,
)
from ffmerge.errors import EncoderExitError, EncoderNotFound, EncoderOutputMissing, EncoderTimeout


posix_only = pytest.mark.skipif(os.name == "nt", reason="uses /bin/sh stand-ins for ffmpeg")


def make_params(tmp_path: Path, **overrides) -> EncodeParams:
    values = dict(
        image_path=tmp_path / "job_cover.png",
        audio_path=tmp_path / "job_audio.mp3",
        output_path=tmp_path / "job.mp4",
        width=640,
        height=480,
        label="test",
    )
    values.update(overrides)
    return EncodeParams(**values)


def fake_ffmpeg(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-ffmpeg"
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def test_build_merge_command_loops_scales_and_pads(tmp_path):
    params = make_params(tmp_path)
    cmd = build_merge_command(params)

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-loop") + 1] == "1"
    assert cmd[cmd.index("-vf") + 1] == (
        "scale=640:480:force_original_aspect_ratio=decrease,pad=640:480:(ow-iw)/2:(oh-ih)/2"
    )
    assert cmd[cmd.index("-movflags") + 1] == "+faststart"
    assert "-shortest" in cmd
    assert "-t" not in cmd
    assert cmd[-1] == str(params.output_path)


def test_build_merge_command_with_duration(tmp_path):
    cmd = build_merge_command(make_params(tmp_path, duration=12.5), binary="/opt/ffmpeg")
    assert cmd[0] == "/opt/ffmpeg"
    assert cmd[cmd.index("-t") + 1] == "12.500"


def test_missing_binary_raises_encoder_not_found(tmp_path):
    encoder = FFmpegEncoder(str(tmp_path / "no-such-ffmpeg"))
    with pytest.raises(EncoderNotFound):
        asyncio.run(encoder.encode(make_params(tmp_path)))


@posix_only
def test_successful_encode_returns_output_path(tmp_path):
    binary = fake_ffmpeg(tmp_path, 'for last; do :; done\nprintf "video" > "$last"\nexit 0')
    params = make_params(tmp_path)

    result = asyncio.run(FFmpegEncoder(binary).encode(params))

    assert result == params.output_path
    assert params.output_path.read_bytes() == b"video"


@posix_only
def test_nonzero_exit_carries_bounded_diagnostic(tmp_path):
    binary = fake_ffmpeg(
        tmp_path,
        "i=0\nwhile [ $i -lt 200 ]; do echo \"noise line $i\" >&2; i=$((i+1)); done\n"
        "echo 'Invalid data found when processing input' >&2\nexit 3",
    )

    with pytest.raises(EncoderExitError) as exc:
        asyncio.run(FFmpegEncoder(binary).encode(make_params(tmp_path)))

    assert exc.value.returncode == 3
    assert len(exc.value.diagnostic) <= DIAGNOSTIC_TAIL_CHARS
    assert exc.value.diagnostic.rstrip().endswith("Invalid data found when processing input")
    assert "noise line 0\n" not in exc.value.diagnostic


@posix_only
def test_clean_exit_without_output_is_an_error(tmp_path):
    binary = fake_ffmpeg(tmp_path, "exit 0")
    with pytest.raises(EncoderOutputMissing):
        asyncio.run(FFmpegEncoder(binary).encode(make_params(tmp_path)))


@posix_only
def test_optional_timeout_terminates_the_process(tmp_path):
    binary = fake_ffmpeg(tmp_path, "exec sleep 30")
    encoder = FFmpegEncoder(binary, timeout=0.2)
    with pytest.raises(EncoderTimeout):
        asyncio.run(encoder.encode(make_params(tmp_path)))


def test_progress_parser_logs_every_five_seconds(caplog):
    parser = FFmpegProgressParser("req-1")
    lines = [
        "frame=  10 fps=0.0 q=0.0 size=0kB time=00:00:03.00 bitrate=N/A speed=6x",
        "frame=  20 fps=0.0 q=0.0 size=0kB time=00:00:06.10 bitrate=N/A speed=6.1x",
        "frame=  30 fps=0.0 q=0.0 size=0kB time=00:00:08.00 bitrate=N/A speed=6x",
        "frame=  40 fps=0.0 q=0.0 size=0kB time=00:00:12.00 bitrate=N/A",
        "Stream mapping:",
    ]
    with caplog.at_level(logging.INFO, logger="ffmerge.encoder"):
        for line in lines:
            parser(line)

    messages = [r.getMessage() for r in caplog.records if "FFmpeg progress" in r.getMessage()]
    assert messages == [
        "[req-1] FFmpeg progress: 6s (speed=6.1x)",
        "[req-1] FFmpeg progress: 12s",
    ]

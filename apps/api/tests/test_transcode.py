from unittest.mock import MagicMock, patch

import ffmpeg
import pytest

from services.transcode import (
    SCALE_FILTER_ATTEMPTS,
    TranscodeError,
    VideoProbe,
    extract_thumbnail,
    normalize_clip,
    probe_video,
    probe_video_quietly,
)


def _ffmpeg_failure(stderr=b"Invalid filter"):
    return ffmpeg.Error("ffmpeg", b"", stderr)


def _pipeline(run_side_effect=None):
    """Mock for ``ffmpeg.input(...).output(...).overwrite_output().run(...)``."""
    input_mock = MagicMock()
    output_mock = input_mock.return_value.output
    run_mock = output_mock.return_value.overwrite_output.return_value.run
    run_mock.side_effect = run_side_effect
    return input_mock, output_mock, run_mock


def _normalize(tmp_path, seek_sec=0.0):
    return normalize_clip(
        tmp_path / "in.mp4",
        tmp_path / "out.mp4",
        seek_sec=seek_sec,
        max_duration_sec=30.0,
        max_width=1280,
        max_height=720,
    )


def test_probe_reads_format_duration_and_video_dimensions():
    payload = {
        "format": {"duration": "45.2"},
        "streams": [
            {"codec_type": "audio", "duration": "45.0"},
            {"codec_type": "video", "width": 1920, "height": "1080", "duration": "44.9"},
        ],
    }
    with patch("services.transcode.ffmpeg.probe", return_value=payload):
        probe = probe_video("/tmp/clip.mp4")

    assert probe == VideoProbe(duration_sec=45.2, width=1920, height=1080)


def test_probe_falls_back_to_stream_duration():
    payload = {
        "format": {"duration": "N/A"},
        "streams": [{"codec_type": "video", "width": 0, "height": 720, "duration": "12.5"}],
    }
    with patch("services.transcode.ffmpeg.probe", return_value=payload):
        probe = probe_video("/tmp/clip.mp4")

    assert probe.duration_sec == 12.5
    assert probe.width is None
    assert probe.height == 720


def test_probe_without_video_stream_has_no_dimensions():
    with patch("services.transcode.ffmpeg.probe", return_value={"format": {}, "streams": []}):
        assert probe_video("/tmp/audio.m4a") == VideoProbe()


def test_quiet_probe_swallows_ffprobe_errors():
    with patch("services.transcode.ffmpeg.probe", side_effect=_ffmpeg_failure(b"moov atom not found")):
        assert probe_video_quietly("/tmp/broken.mp4") == VideoProbe()


def test_first_attempt_encodes_with_bounded_scale(tmp_path):
    input_mock, output_mock, run_mock = _pipeline()

    with patch("services.transcode.ffmpeg.input", input_mock):
        used = _normalize(tmp_path, seek_sec=15.0)

    assert used == "scale=1280:720:force_original_aspect_ratio=decrease"
    input_mock.assert_called_once_with(str(tmp_path / "in.mp4"), ss=15.0)
    output_mock.assert_called_once_with(
        str(tmp_path / "out.mp4"),
        t=30.0,
        vcodec="libx264",
        preset="veryfast",
        crf=26,
        acodec="aac",
        movflags="+faststart",
        vf="scale=1280:720:force_original_aspect_ratio=decrease",
    )
    run_mock.assert_called_once_with(quiet=True)


def test_zero_seek_is_not_passed_to_input(tmp_path):
    input_mock, _, _ = _pipeline()

    with patch("services.transcode.ffmpeg.input", input_mock):
        _normalize(tmp_path, seek_sec=0.0)

    input_mock.assert_called_once_with(str(tmp_path / "in.mp4"))


def test_failed_filter_falls_through_to_next_attempt(tmp_path):
    partial = tmp_path / "out.mp4"
    run_calls = []

    def run(quiet):
        if len(run_calls) == 0:
            partial.write_bytes(b"half written")
        run_calls.append(quiet)
        if len(run_calls) == 1:
            raise _ffmpeg_failure()

    input_mock, output_mock, _ = _pipeline(run_side_effect=run)

    with patch("services.transcode.ffmpeg.input", input_mock):
        used = _normalize(tmp_path)

    assert used == "scale=-2:720:force_original_aspect_ratio=decrease"
    filters = [call.kwargs.get("vf") for call in output_mock.call_args_list]
    assert filters == [
        "scale=1280:720:force_original_aspect_ratio=decrease",
        "scale=-2:720:force_original_aspect_ratio=decrease",
    ]
    assert not partial.exists()


def test_exhausted_attempts_raise_with_last_stderr(tmp_path):
    failures = [_ffmpeg_failure(f"attempt {n} failed".encode()) for n in range(1, len(SCALE_FILTER_ATTEMPTS) + 1)]
    input_mock, output_mock, run_mock = _pipeline(run_side_effect=failures)

    with patch("services.transcode.ffmpeg.input", input_mock):
        with pytest.raises(TranscodeError, match="transcode_failed_all_attempts: attempt 4 failed"):
            _normalize(tmp_path)

    assert run_mock.call_count == len(SCALE_FILTER_ATTEMPTS)
    last_kwargs = output_mock.call_args_list[-1].kwargs
    assert "vf" not in last_kwargs
    assert last_kwargs["movflags"] == "+faststart"


def test_extract_thumbnail_writes_single_frame(tmp_path):
    target = tmp_path / "thumb.jpg"
    input_mock, output_mock, _ = _pipeline(run_side_effect=lambda quiet: target.write_bytes(b"\xff\xd8"))

    with patch("services.transcode.ffmpeg.input", input_mock):
        assert extract_thumbnail(tmp_path / "in.mp4", target, at_sec=-3) == target

    input_mock.assert_called_once_with(str(tmp_path / "in.mp4"), ss=0)
    output_mock.assert_called_once_with(str(target), vframes=1, **{"q:v": 2})


def test_extract_thumbnail_rejects_empty_output(tmp_path):
    input_mock, _, _ = _pipeline()

    with patch("services.transcode.ffmpeg.input", input_mock):
        with pytest.raises(TranscodeError, match="thumbnail_not_written"):
            extract_thumbnail(tmp_path / "in.mp4", tmp_path / "thumb.jpg")

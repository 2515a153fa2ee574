from __future__ import annotations

import io
import json
import logging
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from voice_rewind.config import AudioAppConfig
from voice_rewind.reader import StoppableReader
from voice_rewind.recognizer import CommandRecognizer, parse_result
from voice_rewind.timing import RecognitionResult, WordInfo

ASR_CFG = AudioAppConfig(application="asr-stream", args="--model wake --rate 16000")


def result_line(transcript: str, start_time: float, is_partial: bool = False) -> bytes:
    result = {
        "is_partial": is_partial,
        "alternatives": [
            {
                "transcript": transcript,
                "confidence": 0.97,
                "words": [{"word": transcript, "start_time": start_time}],
            }
        ],
    }
    return json.dumps(result).encode() + b"\n"


class RecordingPipe(io.BytesIO):
    """stdin stand-in that keeps what was written after close()."""

    data = b""

    def close(self):
        if not self.closed:
            self.data = self.getvalue()
        super().close()


def fake_process(stdout: bytes, returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.pid = 5151
    proc.stdout = io.BytesIO(stdout)
    proc.stdin = RecordingPipe()
    proc.wait.return_value = returncode
    return proc


class EndlessSource:
    def read(self, size: int = -1) -> bytes:
        return b"\x02" * max(size, 1)


class TestParseResult:
    def test_builds_dataclasses(self):
        result = parse_result(result_line("OKCOBALT", 1.25))
        assert isinstance(result, RecognitionResult)
        assert result.is_partial is False
        assert result.alternatives[0].transcript == "OKCOBALT"
        assert result.alternatives[0].words == [WordInfo("OKCOBALT", 1.25)]

    def test_defaults(self):
        result = parse_result('{"alternatives": [{"transcript": "HI", "confidence": 0.5}]}')
        assert result.is_partial is False
        assert result.alternatives[0].words == []

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError):
            parse_result('{"alternatives": [{"transcript": "HI"}]}')

    def test_not_json_rejected(self):
        with pytest.raises(ValidationError):
            parse_result("transcript: HI")


class TestCommandRecognizer:
    def test_launches_application_with_pipes(self):
        proc = fake_process(b"")
        with patch("voice_rewind.recognizer.subprocess.Popen", return_value=proc) as popen:
            CommandRecognizer(ASR_CFG).recognize(io.BytesIO(b""), lambda result: None)

        args, kwargs = popen.call_args
        assert args[0] == ["asr-stream", "--model", "wake", "--rate", "16000"]
        assert kwargs["stdin"] is subprocess.PIPE
        assert kwargs["stdout"] is subprocess.PIPE

    def test_feeds_whole_stream_and_delivers_results(self):
        audio = bytes(range(256)) * 80
        output = result_line("HELLO", 0.1, is_partial=True) + b"\n" + result_line("OKCOBALT", 0.6)
        proc = fake_process(output)
        results = []

        with patch("voice_rewind.recognizer.subprocess.Popen", return_value=proc):
            CommandRecognizer(ASR_CFG, chunk_size=1000).recognize(io.BytesIO(audio), results.append)

        assert proc.stdin.data == audio
        assert [r.alternatives[0].transcript for r in results] == ["HELLO", "OKCOBALT"]
        assert results[0].is_partial is True

    def test_malformed_output_skipped(self, caplog):
        proc = fake_process(b"garbage\n" + result_line("OKCOBALT", 0.6))
        results = []

        with caplog.at_level(logging.WARNING, logger="voice_rewind.recognizer"):
            with patch("voice_rewind.recognizer.subprocess.Popen", return_value=proc):
                CommandRecognizer(ASR_CFG).recognize(io.BytesIO(b""), results.append)

        assert len(results) == 1
        assert "malformed recognizer output" in caplog.text

    def test_nonzero_exit_raises(self):
        proc = fake_process(b"", returncode=3)
        with patch("voice_rewind.recognizer.subprocess.Popen", return_value=proc):
            with pytest.raises(RuntimeError, match="status 3"):
                CommandRecognizer(ASR_CFG).recognize(io.BytesIO(b"abc"), lambda result: None)

    def test_handler_error_kills_process(self):
        proc = fake_process(result_line("OKCOBALT", 0.6))

        def explode(result):
            raise ValueError("bad handler")

        with patch("voice_rewind.recognizer.subprocess.Popen", return_value=proc):
            with pytest.raises(ValueError):
                CommandRecognizer(ASR_CFG).recognize(io.BytesIO(b"abc"), explode)
        proc.kill.assert_called_once()
        proc.wait.assert_called_once()

    def test_stopping_the_reader_ends_the_feed(self):
        reader = StoppableReader(EndlessSource(), 4096)
        proc = fake_process(result_line("OKCOBALT", 0.6))

        with patch("voice_rewind.recognizer.subprocess.Popen", return_value=proc):
            CommandRecognizer(ASR_CFG, chunk_size=512).recognize(
                reader, lambda result: reader.stop()
            )

        # The feed saw end-of-stream and closed the recognizer's input
        assert proc.stdin.closed
        assert len(proc.stdin.data) % 512 == 0
        assert reader.read(4) == b"\x02" * 4

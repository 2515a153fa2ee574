from __future__ import annotations

import io
import wave
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

import voice_rewind.__main__ as cli
from voice_rewind.alsa import AlsaRecorder
from voice_rewind.audio import Recorder
from voice_rewind.config import FRAME_BYTES, AppConfig
from voice_rewind.session import PhraseSession, WakeSession
from voice_rewind.timing import RecognitionAlternative, RecognitionResult, WordInfo

SILENT = b"\x00" * FRAME_BYTES
WAKE = np.full(FRAME_BYTES // 2, 1000, dtype=np.int16).tobytes()
SPEECH = np.full(FRAME_BYTES // 2, 3000, dtype=np.int16).tobytes()


class FakeRecorder:
    def __init__(self, audio: bytes):
        self._stream = io.BytesIO(audio)
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def read(self, size=-1):
        return self._stream.read(size)


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch):
    monkeypatch.setattr(cli.signal, "signal", MagicMock())


class TestMakeRecorder:
    def test_command_backend(self):
        assert isinstance(cli.make_recorder(AppConfig()), Recorder)

    def test_alsa_backend(self):
        cfg = AppConfig.model_validate({"recording": {"backend": "alsa"}})
        assert isinstance(cli.make_recorder(cfg), AlsaRecorder)


class TestMakeSession:
    def test_openwakeword_engine(self):
        with patch.object(cli, "WakeWordDetector") as detector_cls:
            session = cli.make_session(AppConfig(), MagicMock())
        assert isinstance(session, WakeSession)
        detector_cls.assert_called_once_with(model_name="hey_jarvis", threshold=0.5)

    def test_recognizer_engine(self):
        cfg = AppConfig.model_validate(
            {"wakeword": {"engine": "recognizer"}, "recognizer": {"application": "asr"}}
        )
        with patch.object(cli, "WakeWordDetector") as detector_cls:
            session = cli.make_session(cfg, MagicMock())
        assert isinstance(session, PhraseSession)
        detector_cls.assert_not_called()


class TestSaveCapture:
    def test_writes_wav(self, tmp_path):
        path = cli.save_capture(SPEECH, tmp_path / "out", 7)
        assert path.parent == tmp_path / "out"
        assert path.name.endswith("-007.wav")
        with wave.open(str(path), "rb") as wf:
            assert wf.readframes(wf.getnframes()) == SPEECH


class TestMain:
    def test_captures_until_source_ends(self, tmp_path):
        # Two wake/utterance cycles; 1.5s of silence (19 frames) ends each one
        cycle = [SILENT, WAKE, SPEECH] + [SILENT] * 20
        recorder = FakeRecorder(b"".join(cycle * 2))
        detector = MagicMock()
        detector.detect.side_effect = lambda frame: frame == WAKE

        with patch.object(cli, "make_recorder", return_value=recorder), patch.object(
            cli, "WakeWordDetector", return_value=detector
        ):
            cli.main(["--output-dir", str(tmp_path)])

        assert recorder.started and recorder.stopped
        files = sorted(tmp_path.glob("capture-*.wav"))
        assert len(files) == 2
        with wave.open(str(files[0]), "rb") as wf:
            audio = wf.readframes(wf.getnframes())
        # Pre-roll reaches back to the start of the stream, then 19 silent frames end it
        assert audio == SILENT + WAKE + SPEECH + SILENT * 19

    def test_bad_config_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--config", str(tmp_path / "missing.toml")])
        assert exc_info.value.code == 1

    def test_playback_when_enabled(self, tmp_path):
        recorder = FakeRecorder(b"".join([WAKE, SPEECH] + [SILENT] * 20))
        detector = MagicMock()
        detector.detect.side_effect = lambda frame: frame == WAKE
        player = MagicMock()
        cfg = AppConfig.model_validate({"playback": {"enabled": True}})

        with patch.object(cli, "make_recorder", return_value=recorder), patch.object(
            cli, "WakeWordDetector", return_value=detector
        ), patch.object(cli, "AppConfig", return_value=cfg), patch.object(
            cli, "Player", return_value=player
        ):
            cli.main(["--output-dir", str(tmp_path)])

        player.play.assert_called_once()
        assert player.play.call_args[0][0].startswith(WAKE)

    def test_failed_playback_keeps_listening(self, tmp_path):
        cycle = [WAKE, SPEECH] + [SILENT] * 20
        recorder = FakeRecorder(b"".join(cycle * 2))
        detector = MagicMock()
        detector.detect.side_effect = lambda frame: frame == WAKE
        player = MagicMock()
        player.play.side_effect = RuntimeError("playback application exited with status 1")
        cfg = AppConfig.model_validate({"playback": {"enabled": True}})

        with patch.object(cli, "make_recorder", return_value=recorder), patch.object(
            cli, "WakeWordDetector", return_value=detector
        ), patch.object(cli, "AppConfig", return_value=cfg), patch.object(
            cli, "Player", return_value=player
        ):
            cli.main(["--output-dir", str(tmp_path)])

        assert player.play.call_count == 2
        assert len(list(tmp_path.glob("capture-*.wav"))) == 2
        assert recorder.stopped

    def test_recognizer_engine_end_to_end(self, tmp_path):
        # The recognizer hears the wake phrase in the fourth frame, which
        # starts two frames (0.16s) into its stream
        audio = [SILENT, SILENT, SPEECH, SPEECH, SPEECH] + [SILENT] * 20
        recorder = FakeRecorder(b"".join(audio))
        start_time = 2 * FRAME_BYTES / 32000
        result = RecognitionResult(
            [RecognitionAlternative("OKCOBALT", 0.99, [WordInfo("OKCOBALT", start_time)])]
        )

        class FakeRecognizer:
            calls = 0

            def recognize(self, stream, on_result):
                FakeRecognizer.calls += 1
                frames = 0
                while stream.read(FRAME_BYTES):
                    frames += 1
                    if frames == 4:
                        on_result(result)

        cfg = AppConfig.model_validate(
            {"wakeword": {"engine": "recognizer"}, "recognizer": {"application": "asr"}}
        )
        with patch.object(cli, "make_recorder", return_value=recorder), patch.object(
            cli, "CommandRecognizer", return_value=FakeRecognizer()
        ), patch.object(cli, "AppConfig", return_value=cfg):
            cli.main(["--output-dir", str(tmp_path)])

        files = sorted(tmp_path.glob("capture-*.wav"))
        assert len(files) == 1
        with wave.open(str(files[0]), "rb") as wf:
            captured = wf.readframes(wf.getnframes())
        assert captured == SPEECH * 3 + SILENT * 19
        assert FakeRecognizer.calls == 2

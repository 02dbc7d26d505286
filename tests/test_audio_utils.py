import subprocess
import types

import numpy as np
import pytest

from dictation_service.audio_utils import (
    _ffmpeg_input,
    decode_audio,
    float32_to_pcm16,
    pcm16_to_float32,
    resample,
    rms_level,
    sine_tone,
    validate_samples,
)
from dictation_service.errors import MalformedChunk


class TestDecodeAudio:
    def test_pcm16_decoded_in_process(self, monkeypatch):
        def no_ffmpeg(*args, **kwargs):
            raise AssertionError("ffmpeg should not run for 16 kHz mono PCM")

        monkeypatch.setattr(subprocess, "run", no_ffmpeg)
        audio = np.array([0.0, 0.25, -0.25], dtype=np.float32)
        decoded = decode_audio(float32_to_pcm16(audio))
        assert decoded.dtype == np.float32
        np.testing.assert_allclose(decoded, audio, atol=1e-4)

    def test_float32_decoded_in_process(self):
        audio = np.array([0.1, -0.7], dtype=np.float32)
        decoded = decode_audio(audio.astype("<f4").tobytes(), encoding="pcm_f32le")
        np.testing.assert_array_equal(decoded, audio)

    def test_odd_length_pcm_rejected(self):
        with pytest.raises(MalformedChunk):
            decode_audio(b"\x00\x01\x02")

    def test_other_formats_go_through_ffmpeg(self, monkeypatch):
        calls = []

        def fake_run(cmd, input, capture_output, check):
            calls.append(cmd)
            return types.SimpleNamespace(stdout=np.ones(4, dtype="<f4").tobytes())

        monkeypatch.setattr(subprocess, "run", fake_run)
        decoded = decode_audio(b"RIFF....", sample_rate=44100, channels=2, encoding="wav")
        np.testing.assert_array_equal(decoded, np.ones(4, dtype=np.float32))
        cmd = calls[0]
        assert cmd[cmd.index("-f") + 1] == "wav"
        assert cmd[-7:] == ["-f", "f32le", "-ar", "16000", "-ac", "1", "pipe:1"]

    def test_ffmpeg_failure_is_malformed(self, monkeypatch):
        def failing_run(cmd, input, capture_output, check):
            raise subprocess.CalledProcessError(1, cmd, stderr=b"Invalid data found")

        monkeypatch.setattr(subprocess, "run", failing_run)
        with pytest.raises(MalformedChunk, match="Invalid data found"):
            decode_audio(b"garbage", encoding="ogg")

    def test_ffmpeg_input_mapping(self):
        assert _ffmpeg_input("pcm_s16le") == "s16le"
        assert _ffmpeg_input("wav") == "wav"
        assert _ffmpeg_input("unknown") == "s16le"


class TestAudioUtils:
    def test_pcm_conversion(self):
        audio = np.array([0.0, 0.5, -0.5], dtype=np.float32)
        back = pcm16_to_float32(float32_to_pcm16(audio))
        np.testing.assert_allclose(back, audio, atol=1e-4)

    def test_resample_length(self):
        assert len(resample(np.zeros(4410, dtype=np.float32), 44100, 16000)) == 1600
        audio = np.zeros(10, dtype=np.float32)
        assert resample(audio, 16000, 16000) is audio

    def test_rms_level(self):
        assert rms_level(np.zeros(480, dtype=np.float32)) == 0.0
        assert rms_level(np.zeros(0, dtype=np.float32)) == 0.0
        assert rms_level(np.full(480, 0.5, dtype=np.float32)) == pytest.approx(0.5)
        assert rms_level(np.full(480, 4.0, dtype=np.float32)) == 1.0
        assert rms_level(sine_tone(1.0)) == pytest.approx(0.5 / np.sqrt(2), rel=1e-3)

    def test_sine_tone(self):
        tone = sine_tone(3.0)
        assert len(tone) == 48000
        assert tone.dtype == np.float32
        assert np.abs(tone).max() <= 0.5


class TestValidateSamples:
    def test_accepts_finite_mono(self):
        validate_samples(np.zeros(10, dtype=np.float32))

    @pytest.mark.parametrize(
        "samples",
        [
            np.zeros(0, dtype=np.float32),
            np.zeros((2, 5), dtype=np.float32),
            np.array([0.1, np.inf], dtype=np.float32),
            np.array([np.nan], dtype=np.float32),
        ],
    )
    def test_rejects(self, samples):
        with pytest.raises(MalformedChunk):
            validate_samples(samples)

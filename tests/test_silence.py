"""
Tests for silence analysis and trimming.
"""

from pathlib import Path

import numpy as np
import pytest

from voxchain.core.audio import (
    SampleBuffer,
    SilenceConfig,
    SilenceRegion,
    TrimLimits,
    analyze_and_trim,
    load_wav,
    save_wav,
    trim_recording,
    window_rms,
)

RATE = 16000


def tone(seconds: float, amplitude: float = 0.5) -> np.ndarray:
    return np.full(int(RATE * seconds), amplitude, dtype=np.float32)


def silence(seconds: float) -> np.ndarray:
    return np.zeros(int(RATE * seconds), dtype=np.float32)


def buffer_of(*parts: np.ndarray, channels: int = 1) -> SampleBuffer:
    return SampleBuffer(np.concatenate(parts), RATE, channels)


class TestSampleBuffer:
    def test_duration(self):
        assert SampleBuffer(silence(1.0), RATE).duration == pytest.approx(1.0)

    def test_stereo_duration(self):
        assert SampleBuffer(np.zeros(RATE * 2, dtype=np.float32), RATE, 2).duration == pytest.approx(1.0)

    def test_invalid_format(self):
        with pytest.raises(ValueError):
            SampleBuffer(silence(0.1), 0)


class TestWindowRms:
    def test_rms_values(self):
        samples = np.array([0.0, 0.1, 0.2, 0.1, 0.0], dtype=np.float32)
        rms = window_rms(samples, 5)
        assert rms.shape == (1,)
        assert rms[0] == pytest.approx(0.1095, abs=1e-3)

    def test_short_final_window(self):
        samples = np.array([1.0, 1.0, 0.0, 0.0, 0.5], dtype=np.float32)
        rms = window_rms(samples, 2)
        assert list(np.round(rms, 4)) == [1.0, 0.0, 0.5]

    def test_empty(self):
        assert window_rms(np.zeros(0, dtype=np.float32), 10).size == 0


class TestAnalyzeAndTrim:
    def test_middle_silence_removed(self):
        """1s sound + 2s silence + 1s sound at 16 kHz."""
        audio = buffer_of(tone(1.0), silence(2.0), tone(1.0))
        trimmed, analysis = analyze_and_trim(audio, SilenceConfig(threshold=0.01, min_duration_ms=1500))

        assert analysis.regions == [SilenceRegion(start_frame=16000, end_frame=48000)]
        assert trimmed.duration == pytest.approx(2.0, abs=0.1)
        assert analysis.reduction_percent > 0
        assert analysis.original_duration == pytest.approx(4.0)
        assert analysis.new_duration == pytest.approx(trimmed.duration)
        assert analysis.min_rms == pytest.approx(0.0)
        assert analysis.max_rms == pytest.approx(0.5)
        assert analysis.avg_rms == pytest.approx(0.25)

    def test_no_silence_keeps_everything(self):
        audio = buffer_of(tone(2.0, 0.2))
        trimmed, analysis = analyze_and_trim(audio)

        assert analysis.regions == []
        assert trimmed.duration == audio.duration
        assert np.array_equal(trimmed.samples, audio.samples)
        assert analysis.reduction_percent == 0.0

    def test_short_silence_kept(self):
        audio = buffer_of(tone(1.0), silence(1.0), tone(1.0))
        trimmed, analysis = analyze_and_trim(audio, SilenceConfig(min_duration_ms=1500))

        assert analysis.regions == []
        assert trimmed.duration == pytest.approx(3.0)

    def test_trailing_silence_removed(self):
        audio = buffer_of(tone(1.0), silence(2.05))
        trimmed, analysis = analyze_and_trim(audio, SilenceConfig(min_duration_ms=1500))

        assert len(analysis.regions) == 1
        assert analysis.regions[0].end_frame == len(audio)
        assert trimmed.duration == pytest.approx(1.0)

    def test_separate_runs_not_merged(self):
        """A short loud blip between two qualifying silences keeps them apart."""
        audio = buffer_of(tone(0.5), silence(2.0), tone(0.2), silence(2.0), tone(0.5))
        trimmed, analysis = analyze_and_trim(audio, SilenceConfig(min_duration_ms=1500))

        assert len(analysis.regions) == 2
        assert analysis.regions[0].end_frame <= analysis.regions[1].start_frame
        assert trimmed.duration == pytest.approx(1.2, abs=0.1)

    def test_quiet_but_above_threshold(self):
        audio = buffer_of(tone(1.0), tone(2.0, 0.02), tone(1.0))
        trimmed, analysis = analyze_and_trim(audio, SilenceConfig(threshold=0.01))
        assert analysis.regions == []
        assert trimmed.duration == audio.duration

    def test_output_never_longer(self):
        rng = np.random.default_rng(42)
        for _ in range(5):
            samples = rng.uniform(-0.05, 0.05, RATE * 3).astype(np.float32)
            samples[rng.integers(0, RATE * 2) :][: RATE] = 0.0
            audio = SampleBuffer(samples, RATE)
            trimmed, _ = analyze_and_trim(audio, SilenceConfig(threshold=0.02, min_duration_ms=500))
            assert trimmed.duration <= audio.duration

    def test_empty_buffer(self):
        trimmed, analysis = analyze_and_trim(SampleBuffer(np.zeros(0, dtype=np.float32), RATE))
        assert len(trimmed) == 0
        assert analysis.regions == []
        assert analysis.min_rms == analysis.max_rms == analysis.avg_rms == 0.0
        assert analysis.reduction_percent == 0.0
        assert analysis.original_duration == 0.0

    def test_input_not_mutated(self):
        audio = buffer_of(tone(1.0), silence(2.0), tone(1.0))
        before = audio.samples.copy()
        analyze_and_trim(audio)
        assert np.array_equal(audio.samples, before)


class TestStereo:
    """Interleaved stereo at a rate whose 100 ms window is not a whole number of frames."""

    STEREO_RATE = 11025

    def frames(self, count: int, left: float, right: float) -> np.ndarray:
        return np.column_stack([np.full(count, left), np.full(count, right)]).astype(np.float32).reshape(-1)

    def make_buffer(self) -> SampleBuffer:
        rate = self.STEREO_RATE
        samples = np.concatenate(
            [
                self.frames(int(rate * 1.1), 0.5, -0.25),
                self.frames(rate * 2, 0.0, 0.0),
                self.frames(rate, 0.5, -0.25),
            ]
        )
        return SampleBuffer(samples, rate, 2)

    def test_regions_are_frame_aligned(self):
        trimmed, analysis = analyze_and_trim(self.make_buffer())

        assert len(analysis.regions) == 1
        region = analysis.regions[0]
        assert region.start_frame % 2 == 0
        assert region.end_frame % 2 == 0
        assert len(trimmed) % 2 == 0

    def test_channels_stay_in_place(self):
        trimmed, _ = analyze_and_trim(self.make_buffer())

        left, right = trimmed.samples[0::2], trimmed.samples[1::2]
        assert np.isin(left, [0.0, 0.5]).all()
        assert np.isin(right, [0.0, -0.25]).all()

    def test_trimmed_stereo_saves(self, tmp_path: Path):
        trimmed, _ = analyze_and_trim(self.make_buffer())
        path = save_wav(trimmed, str(tmp_path / "stereo.wav"))
        loaded = load_wav(str(path))

        assert loaded.channel_count == 2
        assert loaded.sample_rate == self.STEREO_RATE
        assert len(loaded) == len(trimmed)


class TestTrimRecording:
    def test_applied(self):
        outcome = trim_recording(buffer_of(tone(1.0), silence(2.0), tone(1.0)))
        assert outcome.applied is True
        assert outcome.reason is None
        assert outcome.buffer.duration == pytest.approx(2.0, abs=0.1)

    def test_too_short_recording(self):
        audio = buffer_of(silence(0.5))
        outcome = trim_recording(audio)
        assert outcome.applied is False
        assert outcome.reason == "recording too short"
        assert outcome.buffer is audio

    def test_reduction_above_limit(self):
        audio = buffer_of(tone(0.2), silence(5.0))
        outcome = trim_recording(audio)
        assert outcome.applied is False
        assert outcome.reason == "reduction above limit"

    def test_result_too_short(self):
        audio = buffer_of(tone(0.3), silence(2.0))
        outcome = trim_recording(audio, limits=TrimLimits(max_reduction_percent=100.0))
        assert outcome.applied is False
        assert outcome.reason == "result too short"

    def test_nothing_to_remove(self):
        outcome = trim_recording(buffer_of(tone(2.0)))
        assert outcome.applied is False
        assert outcome.reason == "no silence detected"


class TestWavIO:
    def test_roundtrip(self, tmp_path: Path):
        audio = buffer_of(tone(0.25, 0.5), silence(0.25))
        path = save_wav(audio, str(tmp_path / "out.wav"))
        loaded = load_wav(str(path))

        assert loaded.sample_rate == RATE
        assert loaded.channel_count == 1
        assert len(loaded) == len(audio)
        assert np.allclose(loaded.samples, audio.samples, atol=1e-3)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_wav(str(tmp_path / "missing.wav"))

"""
Silence removal for recorded audio.

This module detects low-energy regions with windowed RMS analysis and cuts
them out of a sample buffer, so transcription is cheaper and faster. The
analysis itself is a pure function; file decoding and encoding go through
soundfile.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import soundfile as sf

from .timing import timer

logger = logging.getLogger(__name__)

WINDOW_MS = 100


class AudioProcessingError(Exception):
    """Raised when an audio file cannot be read or written."""

    pass


@dataclass
class SampleBuffer:
    """
    Interleaved float samples in [-1, 1] plus their format.

    Attributes:
        samples: 1-D float32 array, channels interleaved
        sample_rate: Frames per second (Hz)
        channel_count: Number of interleaved channels
    """

    samples: np.ndarray
    sample_rate: int
    channel_count: int = 1

    def __post_init__(self):
        self.samples = np.asarray(self.samples, dtype=np.float32).reshape(-1)
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channel_count <= 0:
            raise ValueError(f"channel_count must be positive, got {self.channel_count}")

    def __len__(self) -> int:
        return int(self.samples.size)

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return len(self) / (self.channel_count * self.sample_rate)


@dataclass(frozen=True)
class SilenceRegion:
    """Half-open sample range [start_frame, end_frame) selected for removal."""

    start_frame: int
    end_frame: int

    @property
    def length(self) -> int:
        return self.end_frame - self.start_frame


@dataclass
class SilenceConfig:
    """
    Detection parameters.

    Attributes:
        threshold: RMS below which a window is silent (0.01 is roughly -40 dB)
        min_duration_ms: Shortest silent run that is removed
        window_ms: Analysis window length
    """

    threshold: float = 0.01
    min_duration_ms: int = 1500
    window_ms: int = WINDOW_MS


@dataclass
class SilenceAnalysis:
    """Statistics and regions produced by one analysis pass."""

    min_rms: float = 0.0
    max_rms: float = 0.0
    avg_rms: float = 0.0
    regions: List[SilenceRegion] = field(default_factory=list)
    reduction_percent: float = 0.0
    original_duration: float = 0.0
    new_duration: float = 0.0

    @property
    def removed_duration(self) -> float:
        return self.original_duration - self.new_duration


def window_rms(samples: np.ndarray, window_size: int) -> np.ndarray:
    """
    RMS of each consecutive window of ``window_size`` samples.

    The last window may be shorter; it is not padded.
    """
    if samples.size == 0 or window_size <= 0:
        return np.zeros(0, dtype=np.float64)

    values = samples.astype(np.float64)
    full = values.size // window_size
    squares = values[: full * window_size].reshape(full, window_size) ** 2
    rms = np.sqrt(squares.mean(axis=1)) if full else np.zeros(0, dtype=np.float64)

    tail = values[full * window_size :]
    if tail.size:
        rms = np.append(rms, np.sqrt(np.mean(tail**2)))
    return rms


def find_silence_regions(rms: np.ndarray, window_size: int, total_samples: int, silence_config: SilenceConfig) -> List[SilenceRegion]:
    """
    Turn per-window RMS values into removable regions.

    A maximal run of silent windows qualifies when run_length * window_ms
    reaches min_duration_ms. Qualifying runs are never merged across the
    windows that separate them. A run reaching the end of the buffer ends
    at total_samples.
    """
    regions: List[SilenceRegion] = []
    silent = rms < silence_config.threshold
    run_start: Optional[int] = None

    def close_run(start: int, end: int) -> None:
        if (end - start) * silence_config.window_ms >= silence_config.min_duration_ms:
            end_frame = min(end * window_size, total_samples)
            regions.append(SilenceRegion(start_frame=start * window_size, end_frame=end_frame))

    for index, is_silent in enumerate(silent):
        if is_silent:
            if run_start is None:
                run_start = index
        elif run_start is not None:
            close_run(run_start, index)
            run_start = None

    if run_start is not None:
        close_run(run_start, len(silent))

    return regions


def splice(samples: np.ndarray, regions: List[SilenceRegion]) -> np.ndarray:
    """Concatenate every sample range not covered by a region (hard cuts)."""
    if not regions:
        return samples.copy()

    keep = []
    last_end = 0
    for region in regions:
        if region.start_frame > last_end:
            keep.append(samples[last_end : region.start_frame])
        last_end = region.end_frame
    if last_end < samples.size:
        keep.append(samples[last_end:])

    return np.concatenate(keep) if keep else np.zeros(0, dtype=samples.dtype)


@timer
def analyze_and_trim(buffer: SampleBuffer, silence_config: Optional[SilenceConfig] = None) -> Tuple[SampleBuffer, SilenceAnalysis]:
    """
    Detect silence in a buffer and return a copy with the silent regions removed.

    Args:
        buffer: Audio to analyze
        silence_config: Detection parameters (defaults: 0.01 RMS, 1500 ms)

    Returns:
        Tuple of the trimmed buffer and the analysis statistics. An empty input
        yields an empty output and all-zero statistics.
    """
    silence_config = silence_config or SilenceConfig()
    original_duration = buffer.duration

    if len(buffer) == 0:
        return SampleBuffer(np.zeros(0, dtype=np.float32), buffer.sample_rate, buffer.channel_count), SilenceAnalysis()

    # Whole frames per window so region boundaries never split a frame
    window_size = max(1, int(buffer.sample_rate * silence_config.window_ms / 1000)) * buffer.channel_count
    rms = window_rms(buffer.samples, window_size)
    min_rms, max_rms, avg_rms = float(rms.min()), float(rms.max()), float(rms.sum() / rms.size)

    logger.info(f"RMS analysis: min={min_rms:.4f}, max={max_rms:.4f}, avg={avg_rms:.4f}, threshold={silence_config.threshold:.4f}")

    regions = find_silence_regions(rms, window_size, len(buffer), silence_config)
    logger.info(f"Found {len(regions)} silence region(s) to remove")

    trimmed = SampleBuffer(splice(buffer.samples, regions), buffer.sample_rate, buffer.channel_count)
    new_duration = trimmed.duration
    reduction = (original_duration - new_duration) / original_duration * 100 if original_duration > 0 else 0.0

    analysis = SilenceAnalysis(
        min_rms=min_rms,
        max_rms=max_rms,
        avg_rms=avg_rms,
        regions=regions,
        reduction_percent=reduction,
        original_duration=original_duration,
        new_duration=new_duration,
    )
    logger.info(f"Silence removal complete: {reduction:.1f}% reduction ({original_duration:.2f}s -> {new_duration:.2f}s)")
    return trimmed, analysis


@dataclass
class TrimLimits:
    """
    Guards applied before a trimmed recording replaces the original.

    Attributes:
        min_original_s: Recordings shorter than this are left alone
        max_reduction_percent: Larger reductions usually mean the threshold is too aggressive
        min_result_s: Transcription APIs reject very short clips
    """

    min_original_s: float = 1.0
    max_reduction_percent: float = 90.0
    min_result_s: float = 0.5


@dataclass
class TrimOutcome:
    buffer: SampleBuffer
    analysis: SilenceAnalysis
    applied: bool
    reason: Optional[str] = None


def trim_recording(buffer: SampleBuffer, silence_config: Optional[SilenceConfig] = None, limits: Optional[TrimLimits] = None) -> TrimOutcome:
    """
    Trim silence from a recording, falling back to the original when a guard trips.

    Returns:
        TrimOutcome holding either the trimmed buffer (applied=True) or the
        untouched input with the reason it was kept.
    """
    limits = limits or TrimLimits()

    if buffer.duration < limits.min_original_s:
        logger.info(f"Original audio too short for silence removal (< {limits.min_original_s}s), skipping")
        return TrimOutcome(buffer, SilenceAnalysis(original_duration=buffer.duration, new_duration=buffer.duration), False, "recording too short")

    trimmed, analysis = analyze_and_trim(buffer, silence_config)

    if not analysis.regions:
        logger.info("No significant silence detected")
        return TrimOutcome(buffer, analysis, False, "no silence detected")

    if analysis.reduction_percent > limits.max_reduction_percent:
        logger.warning(f"Silence removal would reduce audio by >{limits.max_reduction_percent:.0f}%, using original audio")
        return TrimOutcome(buffer, analysis, False, "reduction above limit")

    if trimmed.duration < limits.min_result_s:
        logger.warning(f"Trimmed audio too short ({trimmed.duration:.2f}s), using original audio")
        return TrimOutcome(buffer, analysis, False, "result too short")

    return TrimOutcome(trimmed, analysis, True)


def load_wav(path: str) -> SampleBuffer:
    """Decode an audio file into an interleaved float32 SampleBuffer."""
    audio_path = Path(path)
    if not audio_path.exists():
        raise FileNotFoundError(f"Audio file not found: {path}")

    try:
        data, sample_rate = sf.read(str(audio_path), dtype="float32", always_2d=True)
    except Exception as e:
        raise AudioProcessingError(f"Failed to read audio file '{path}': {e}") from e

    frames, channels = data.shape
    logger.info(f"Read {audio_path.name}: {channels} channel(s), {sample_rate} Hz, {frames} frames")
    return SampleBuffer(data.reshape(-1), int(sample_rate), int(channels))


def save_wav(buffer: SampleBuffer, path: str) -> Path:
    """Encode a SampleBuffer as 16-bit PCM WAV."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    frames = np.clip(buffer.samples, -1.0, 1.0).reshape(-1, buffer.channel_count)

    try:
        sf.write(str(out_path), frames, buffer.sample_rate, subtype="PCM_16")
    except Exception as e:
        raise AudioProcessingError(f"Failed to write audio file '{path}': {e}") from e

    logger.info(f"Wrote {len(buffer)} samples to {out_path}")
    return out_path

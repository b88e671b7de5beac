"""Energy-based voice activity detection with an adaptive noise floor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from copilot_server.config.default.pipeline import (
    DEFAULT_VAD_ADAPT_RATIO,
    DEFAULT_VAD_ADAPT_WEIGHT,
    DEFAULT_VAD_INITIAL_NOISE_FLOOR,
    DEFAULT_VAD_MIN_THRESHOLD,
    DEFAULT_VAD_MULTIPLIER,
)
from copilot_server.utils import audio
from copilot_server.utils.logger import LOGGER


class NoiseFloorState(Protocol):
    noise_floor: Optional[float]


@dataclass(frozen=True)
class VADSettings:
    initial_noise_floor: float = DEFAULT_VAD_INITIAL_NOISE_FLOOR
    min_threshold: float = DEFAULT_VAD_MIN_THRESHOLD
    multiplier: float = DEFAULT_VAD_MULTIPLIER
    adapt_ratio: float = DEFAULT_VAD_ADAPT_RATIO
    adapt_weight: float = DEFAULT_VAD_ADAPT_WEIGHT


class VoiceActivityGate:
    """Classifies PCM16 frames as speech against a per-session noise floor.

    The floor only moves toward quiet frames (``rms < floor * adapt_ratio``),
    so sustained speech never drags the threshold up with it.
    """

    def __init__(self, settings: Optional[VADSettings] = None) -> None:
        self.settings = settings or VADSettings()

    def threshold_for(self, state: NoiseFloorState) -> float:
        floor = state.noise_floor
        if floor is None:
            floor = self.settings.initial_noise_floor
        return max(self.settings.min_threshold, floor * self.settings.multiplier)

    def classify(self, state: NoiseFloorState, frame: bytes) -> bool:
        """Return True when the frame is speech. Fails open on any error."""
        try:
            rms = audio.pcm16_rms(frame)
            if state.noise_floor is None:
                state.noise_floor = float(self.settings.initial_noise_floor)
            floor = state.noise_floor
            if rms < floor * self.settings.adapt_ratio:
                weight = self.settings.adapt_weight
                state.noise_floor = floor * (1.0 - weight) + rms * weight
            return rms > self.threshold_for(state)
        except Exception:
            LOGGER.exception("VAD classification failed; treating frame as speech")
            return True

    def segment_is_speech(self, state: NoiseFloorState, segment: bytes) -> bool:
        """Return True when a whole segment clears the current threshold.

        Does not adapt the noise floor.
        """
        try:
            return audio.pcm16_rms(segment) > self.threshold_for(state)
        except Exception:
            LOGGER.exception("Segment energy check failed; keeping segment")
            return True

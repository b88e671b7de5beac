"""PCM16 helpers shared by the VAD gate and transcription pipeline."""

import io
import wave

import numpy as np

BYTES_PER_SAMPLE = 2  # PCM16


def pcm16_samples(pcm_bytes: bytes) -> np.ndarray:
    """PCM16 bytes → int16 numpy array (a trailing odd byte is ignored)."""
    usable = len(pcm_bytes) - (len(pcm_bytes) % BYTES_PER_SAMPLE)
    return np.frombuffer(pcm_bytes[:usable], dtype=np.int16)


def pcm16_rms(pcm_bytes: bytes) -> float:
    """RMS energy of PCM16 bytes in raw sample units (0..32768)."""
    samples = pcm16_samples(pcm_bytes)
    if samples.size == 0:
        return 0.0
    values = samples.astype(np.float64)
    return float(np.sqrt(np.mean(np.square(values))))


def pcm16_to_wav(pcm_bytes: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw PCM16 in a RIFF/WAVE container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(BYTES_PER_SAMPLE)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm_bytes)
    return buffer.getvalue()

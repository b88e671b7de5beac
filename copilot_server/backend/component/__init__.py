"""Component layer helpers for the answer server."""

from .accumulator import AccumulatorSettings, AudioAccumulator, FrameDecision
from .credential_pool import BlockedCredentialStore, CredentialPool, Credential
from .transcript_filters import FilterChain, default_filters
from .vad_gate import VADSettings, VoiceActivityGate

__all__ = [
    "AccumulatorSettings",
    "AudioAccumulator",
    "BlockedCredentialStore",
    "Credential",
    "CredentialPool",
    "FilterChain",
    "FrameDecision",
    "VADSettings",
    "VoiceActivityGate",
    "default_filters",
]

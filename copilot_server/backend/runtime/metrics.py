"""Runtime counters for the answer pipeline."""

import threading
from collections import defaultdict
from typing import Any, Dict


class Metrics:
    """Thread-safe counters and aggregations for server metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active_sessions = 0
        self._frames_total = 0
        self._barge_ins = 0
        self._segments_flushed = 0
        self._segments_dropped: Dict[str, int] = defaultdict(int)
        self._transcriptions_ok = 0
        self._transcriptions_failed = 0
        self._transcription_latency_total = 0.0
        self._transcription_latency_max = 0.0
        self._transcripts_filtered: Dict[str, int] = defaultdict(int)
        self._generations: Dict[str, int] = defaultdict(int)
        self._generation_latency_total = 0.0
        self._generation_latency_max = 0.0
        self._credential_events: Dict[str, int] = defaultdict(int)
        self._error_counts: Dict[str, int] = defaultdict(int)

    def increase_active_sessions(self) -> None:
        with self._lock:
            self._active_sessions += 1

    def decrease_active_sessions(self) -> None:
        with self._lock:
            if self._active_sessions > 0:
                self._active_sessions -= 1

    def record_frame(self) -> None:
        with self._lock:
            self._frames_total += 1

    def record_barge_in(self) -> None:
        with self._lock:
            self._barge_ins += 1

    def record_segment_flushed(self) -> None:
        with self._lock:
            self._segments_flushed += 1

    def record_segment_dropped(self, reason: str) -> None:
        with self._lock:
            self._segments_dropped[reason] += 1

    def record_transcription(self, success: bool, latency_sec: float = 0.0) -> None:
        with self._lock:
            if success:
                self._transcriptions_ok += 1
            else:
                self._transcriptions_failed += 1
            self._transcription_latency_total += latency_sec
            self._transcription_latency_max = max(
                self._transcription_latency_max, latency_sec
            )

    def record_transcript_filtered(self, reason: str) -> None:
        with self._lock:
            self._transcripts_filtered[reason] += 1

    def record_generation(self, status: str, latency_sec: float = 0.0) -> None:
        with self._lock:
            self._generations[status] += 1
            self._generation_latency_total += latency_sec
            self._generation_latency_max = max(
                self._generation_latency_max, latency_sec
            )

    def record_credential_event(self, kind: str) -> None:
        with self._lock:
            self._credential_events[kind] += 1

    def record_error(self, code: str) -> None:
        with self._lock:
            self._error_counts[code] += 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            transcriptions = self._transcriptions_ok + self._transcriptions_failed
            generations = sum(self._generations.values())
            return {
                "active_sessions": self._active_sessions,
                "frames_total": self._frames_total,
                "barge_ins": self._barge_ins,
                "segments_flushed": self._segments_flushed,
                "segments_dropped": dict(self._segments_dropped),
                "transcriptions_ok": self._transcriptions_ok,
                "transcriptions_failed": self._transcriptions_failed,
                "transcription_latency_avg": (
                    self._transcription_latency_total / transcriptions
                    if transcriptions
                    else 0.0
                ),
                "transcription_latency_max": self._transcription_latency_max,
                "transcripts_filtered": dict(self._transcripts_filtered),
                "generations": dict(self._generations),
                "generation_latency_avg": (
                    self._generation_latency_total / generations
                    if generations
                    else 0.0
                ),
                "generation_latency_max": self._generation_latency_max,
                "credential_events": dict(self._credential_events),
                "error_counts": dict(self._error_counts),
            }


__all__ = ["Metrics"]

"""Rotating pool of upstream API credentials with cooldown and block tracking."""

from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set

from copilot_server.config.default.pipeline import (
    DEFAULT_BLOCK_COOLDOWN_SEC,
    DEFAULT_BLOCK_MAX_AGE_SEC,
    DEFAULT_BUCKET_ENV,
    DEFAULT_BUCKET_ROUTES,
    DEFAULT_RATE_LIMIT_COOLDOWN_SEC,
    DEFAULT_TRANSIENT_COOLDOWN_SEC,
)
from copilot_server.errors import UpstreamError
from copilot_server.utils.logger import LOGGER

GENERAL_BUCKET = "general"


def fingerprint_secret(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


@dataclass
class Credential:
    """One API key. ``value`` is never logged; use ``label``."""

    value: str = field(repr=False)
    label: str = ""
    fingerprint: str = ""
    cooldown_until: float = 0.0
    error_count: int = 0
    verified_models: Set[str] = field(default_factory=set)
    blocked_models: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = fingerprint_secret(self.value)
        if not self.label:
            self.label = f"key-{self.fingerprint[:8]}"


def _split_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_credential_buckets(
    env: Optional[Mapping[str, str]] = None,
    bucket_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, List[str]]:
    """Read comma-separated key lists from the environment, one per bucket.

    When the general variable is unset, the general bucket falls back to the
    first non-empty of the other bucket variables.
    """
    env = os.environ if env is None else env
    bucket_env = DEFAULT_BUCKET_ENV if bucket_env is None else bucket_env
    buckets: Dict[str, List[str]] = {}
    for bucket, variable in bucket_env.items():
        keys = _split_keys(env.get(variable))
        if keys:
            buckets[bucket] = keys
    if GENERAL_BUCKET not in buckets:
        for bucket, variable in bucket_env.items():
            if bucket == GENERAL_BUCKET:
                continue
            keys = _split_keys(env.get(variable))
            if keys:
                buckets[GENERAL_BUCKET] = keys
                break
    return buckets


class BlockedCredentialStore:
    """JSON file of ``{blocked: {model: [fingerprint]}, timestamps: {...}}``.

    Timestamps are recorded per model and per fingerprint; entries older than
    ``max_age_sec`` are dropped on load.
    """

    def __init__(
        self,
        path: Path,
        max_age_sec: float = DEFAULT_BLOCK_MAX_AGE_SEC,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self.path = Path(path)
        self.max_age_sec = max_age_sec
        self._time_fn = time_fn or time.time

    def load(self) -> Dict[str, Dict[str, float]]:
        """Return ``{model: {fingerprint: blocked_at}}`` for unexpired entries."""
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to load blocked credential cache: %s", exc)
            return {}
        if not isinstance(data, dict):
            return {}
        cutoff = self._time_fn() - self.max_age_sec
        blocked = data.get("blocked") or {}
        timestamps = data.get("timestamps") or {}
        result: Dict[str, Dict[str, float]] = {}
        for model, fingerprints in blocked.items():
            stamps = timestamps.get(model)
            if not isinstance(fingerprints, list):
                continue
            entries: Dict[str, float] = {}
            for fp in fingerprints:
                if isinstance(stamps, dict):
                    blocked_at = stamps.get(fp)
                else:
                    blocked_at = stamps
                if not isinstance(blocked_at, (int, float)) or blocked_at <= cutoff:
                    continue
                entries[str(fp)] = float(blocked_at)
            if entries:
                result[model] = entries
                LOGGER.info(
                    "Loaded %d blocked credential(s) for %s from cache",
                    len(entries),
                    model,
                )
        return result

    def save(self, blocked: Mapping[str, Mapping[str, float]]) -> None:
        payload = {
            "blocked": {model: sorted(entries) for model, entries in blocked.items()},
            "timestamps": {
                model: dict(entries) for model, entries in blocked.items()
            },
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(payload, fh)
            tmp_path.replace(self.path)
        except OSError as exc:
            LOGGER.warning("Failed to save blocked credential cache: %s", exc)


@dataclass(frozen=True)
class CredentialPoolSettings:
    rate_limit_cooldown_sec: float = DEFAULT_RATE_LIMIT_COOLDOWN_SEC
    transient_cooldown_sec: float = DEFAULT_TRANSIENT_COOLDOWN_SEC
    block_cooldown_sec: float = DEFAULT_BLOCK_COOLDOWN_SEC
    block_max_age_sec: float = DEFAULT_BLOCK_MAX_AGE_SEC
    bucket_routes: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_BUCKET_ROUTES)
    )


class CredentialPool:
    """Process-wide credential health shared by every session.

    All state (cooldowns, verification cache, blocks, round-robin pointers)
    is guarded by one lock.
    """

    def __init__(
        self,
        buckets: Mapping[str, List[str]],
        settings: Optional[CredentialPoolSettings] = None,
        block_store: Optional[BlockedCredentialStore] = None,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or CredentialPoolSettings()
        self._time_fn = time_fn or time.time
        self._lock = threading.Lock()
        self._block_store = block_store
        self._credentials: Dict[str, Credential] = {}
        self._buckets: Dict[str, List[Credential]] = {}
        self._pointers: Dict[str, int] = {}
        for bucket, values in buckets.items():
            members: List[Credential] = []
            for value in values:
                fp = fingerprint_secret(value)
                credential = self._credentials.get(fp)
                if credential is None:
                    credential = Credential(
                        value=value, label=f"{bucket}#{len(members) + 1}"
                    )
                    self._credentials[fp] = credential
                if credential not in members:
                    members.append(credential)
            if members:
                self._buckets[bucket] = members
                self._pointers[bucket] = 0
        if block_store is not None:
            self._restore_blocks(block_store.load())

    def _restore_blocks(self, blocked: Mapping[str, Mapping[str, float]]) -> None:
        for model, entries in blocked.items():
            for fp, blocked_at in entries.items():
                credential = self._credentials.get(fp)
                if credential is None:
                    continue
                credential.blocked_models[model] = blocked_at
                credential.cooldown_until = max(
                    credential.cooldown_until,
                    blocked_at + self.settings.block_cooldown_sec,
                )
                LOGGER.info("Restored block for %s on %s", credential.label, model)

    def bucket_for(self, model_id: str) -> str:
        """Route a model id to a configured bucket, falling back to general."""
        lowered = (model_id or "").lower()
        for needle, bucket in self.settings.bucket_routes.items():
            if needle.lower() in lowered and bucket in self._buckets:
                return bucket
        return GENERAL_BUCKET

    def candidates(self, model_id: str) -> List[Credential]:
        with self._lock:
            return list(self._buckets.get(self.bucket_for(model_id), []))

    def has_credentials(self) -> bool:
        with self._lock:
            return bool(self._buckets)

    def next(self, model_id: str) -> Optional[Credential]:
        """Round-robin over the model's bucket, skipping cooling credentials.

        When every credential is cooling, the one that frees up soonest is
        returned rather than None.
        """
        bucket = self.bucket_for(model_id)
        now = self._time_fn()
        with self._lock:
            members = self._buckets.get(bucket)
            if not members:
                return None
            for _ in range(len(members)):
                index = self._pointers[bucket] % len(members)
                self._pointers[bucket] = (index + 1) % len(members)
                credential = members[index]
                if now >= credential.cooldown_until:
                    return credential
            soonest = min(members, key=lambda item: item.cooldown_until)
        LOGGER.warning(
            "All credentials in bucket %s are cooling down; using %s",
            bucket,
            soonest.label,
        )
        return soonest

    def cooldown(self, credential: Credential, duration_sec: float) -> None:
        until = self._time_fn() + max(0.0, duration_sec)
        with self._lock:
            credential.cooldown_until = max(credential.cooldown_until, until)
            credential.error_count += 1
        LOGGER.info(
            "Credential %s cooling down for %.0fs", credential.label, duration_sec
        )

    def mark_verified(self, credential: Credential, model_id: str) -> None:
        with self._lock:
            credential.verified_models.add(model_id)

    def unmark_verified(self, credential: Credential, model_id: str) -> None:
        with self._lock:
            credential.verified_models.discard(model_id)

    def is_verified(self, credential: Credential, model_id: str) -> bool:
        with self._lock:
            return model_id in credential.verified_models

    def mark_blocked(self, credential: Credential, model_id: str) -> None:
        """Block the credential for one model and persist the block."""
        now = self._time_fn()
        with self._lock:
            credential.blocked_models[model_id] = now
            credential.verified_models.discard(model_id)
            credential.cooldown_until = max(
                credential.cooldown_until, now + self.settings.block_cooldown_sec
            )
            credential.error_count += 1
            snapshot = self._blocked_snapshot()
        LOGGER.warning("Credential %s blocked for %s", credential.label, model_id)
        if self._block_store is not None:
            self._block_store.save(snapshot)

    def is_blocked(self, credential: Credential, model_id: str) -> bool:
        with self._lock:
            blocked_at = credential.blocked_models.get(model_id)
            if blocked_at is None:
                return False
            if self._time_fn() - blocked_at > self.settings.block_max_age_sec:
                credential.blocked_models.pop(model_id, None)
                LOGGER.info(
                    "Block for %s on %s expired; retrying", credential.label, model_id
                )
                return False
            return True

    def record_failure(
        self, credential: Credential, model_id: str, error: UpstreamError
    ) -> None:
        """Apply the cooldown/block policy for an upstream failure."""
        if error.is_permission_denied:
            self.mark_blocked(credential, model_id)
        elif error.is_rate_limited:
            self.cooldown(credential, self.settings.rate_limit_cooldown_sec)
        else:
            self.cooldown(credential, self.settings.transient_cooldown_sec)

    def _blocked_snapshot(self) -> Dict[str, Dict[str, float]]:
        blocked: Dict[str, Dict[str, float]] = {}
        for credential in self._credentials.values():
            for model, blocked_at in credential.blocked_models.items():
                blocked.setdefault(model, {})[credential.fingerprint] = blocked_at
        return blocked

    def snapshot(self) -> Dict[str, object]:
        now = self._time_fn()
        with self._lock:
            return {
                bucket: [
                    {
                        "label": credential.label,
                        "cooling": credential.cooldown_until > now,
                        "error_count": credential.error_count,
                        "verified_models": sorted(credential.verified_models),
                        "blocked_models": sorted(credential.blocked_models),
                    }
                    for credential in members
                ]
                for bucket, members in self._buckets.items()
            }


__all__ = [
    "BlockedCredentialStore",
    "Credential",
    "CredentialPool",
    "CredentialPoolSettings",
    "GENERAL_BUCKET",
    "fingerprint_secret",
    "load_credential_buckets",
]

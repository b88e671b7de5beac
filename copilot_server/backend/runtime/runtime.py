"""Application wiring for the answer server."""

from __future__ import annotations

import os
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from copilot_server import PROJECT_ROOT
from copilot_server.backend.application.answer_service import AnswerService
from copilot_server.backend.application.generation import GenerationPipeline
from copilot_server.backend.application.session_manager import (
    Session,
    SessionStore,
    SessionStoreHooks,
)
from copilot_server.backend.application.transcription import TranscriptionPipeline
from copilot_server.backend.bridges import (
    JsonlPersistence,
    NullPersistence,
    PersistenceBridge,
    RendererHub,
    StaticSettings,
)
from copilot_server.backend.component.accumulator import (
    AudioAccumulator,
    TimerFactory,
)
from copilot_server.backend.component.credential_pool import (
    BlockedCredentialStore,
    CredentialPool,
    load_credential_buckets,
)
from copilot_server.backend.component.transcript_filters import (
    FilterChain,
    default_filters,
)
from copilot_server.backend.component.vad_gate import VoiceActivityGate
from copilot_server.backend.runtime.config import RuntimeConfig
from copilot_server.backend.runtime.metrics import Metrics
from copilot_server.backend.upstream.base import UpstreamClient
from copilot_server.backend.upstream.groq_client import GroqUpstreamClient
from copilot_server.errors import ErrorCode, format_error
from copilot_server.utils.logger import LOGGER


def _resolve_path(path: str) -> Path:
    resolved = Path(path).expanduser()
    if not resolved.is_absolute():
        resolved = PROJECT_ROOT / resolved
    return resolved


class ApplicationRuntime:  # pylint: disable=too-many-instance-attributes
    """Builds and owns application-layer dependencies."""

    def __init__(
        self,
        config: RuntimeConfig,
        client: Optional[UpstreamClient] = None,
        env: Optional[Mapping[str, str]] = None,
        timer_factory: Optional[TimerFactory] = None,
        executor: Optional[Executor] = None,
        persistence: Optional[PersistenceBridge] = None,
    ) -> None:
        self.config = config
        self.metrics = Metrics()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(1, config.service.worker_threads),
            thread_name_prefix="copilot-worker",
        )

        credentials = config.credentials
        block_store = None
        if credentials.block_cache_path:
            block_store = BlockedCredentialStore(
                _resolve_path(credentials.block_cache_path),
                max_age_sec=credentials.pool.block_max_age_sec,
            )
        buckets = load_credential_buckets(
            os.environ if env is None else env, credentials.bucket_env
        )
        self.credential_pool = CredentialPool(
            buckets, settings=credentials.pool, block_store=block_store
        )
        if not self.credential_pool.has_credentials():
            LOGGER.warning(format_error(ErrorCode.NO_CREDENTIALS_CONFIGURED))

        self.client = client or GroqUpstreamClient()

        self.renderer = RendererHub()
        self.settings_provider = StaticSettings(config.settings)
        if persistence is None:
            persistence = (
                JsonlPersistence(_resolve_path(config.persistence.path))
                if config.persistence.enabled
                else NullPersistence()
            )
        self.persistence = persistence

        self.session_store = SessionStore(
            SessionStoreHooks(
                on_create=self._on_session_created,
                on_remove=self._on_session_removed,
            )
        )
        self.vad = VoiceActivityGate(config.vad)
        self.accumulator = AudioAccumulator(
            config.accumulator, timer_factory=timer_factory
        )
        self.transcription = TranscriptionPipeline(
            self.credential_pool,
            self.client,
            settings=config.transcription,
            filters=FilterChain(default_filters(config.min_words)),
            metrics=self.metrics,
        )
        self.generation = GenerationPipeline(
            self.credential_pool,
            self.client,
            self.renderer,
            persistence=self.persistence,
            settings_provider=self.settings_provider,
            settings=config.generation,
            metrics=self.metrics,
            executor=self.executor,
        )
        self.service = AnswerService(
            store=self.session_store,
            vad=self.vad,
            accumulator=self.accumulator,
            transcription=self.transcription,
            generation=self.generation,
            renderer=self.renderer,
            metrics=self.metrics,
            executor=self.executor,
            settings=config.service,
        )

    def _on_session_created(self, _: Session) -> None:
        self.metrics.increase_active_sessions()

    def _on_session_removed(self, _: Session) -> None:
        self.metrics.decrease_active_sessions()

    def health_snapshot(self) -> Dict[str, Any]:
        """Return a point-in-time snapshot of runtime health."""
        pool = self.credential_pool.snapshot()
        return {
            "active_sessions": self.session_store.active_count(),
            "credentials_configured": self.credential_pool.has_credentials(),
            "credential_buckets": pool,
        }

    def shutdown(self) -> None:
        """Release runtime resources before exiting."""
        self.service.shutdown()
        if self._owns_executor:
            self.executor.shutdown(wait=False, cancel_futures=True)

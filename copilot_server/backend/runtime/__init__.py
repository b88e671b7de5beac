"""Runtime wiring and configuration for the answer pipeline."""

from .config import (
    CredentialRuntimeConfig,
    PersistenceRuntimeConfig,
    RuntimeConfig,
    build_runtime_config,
)
from .runtime import ApplicationRuntime

__all__ = [
    "ApplicationRuntime",
    "CredentialRuntimeConfig",
    "PersistenceRuntimeConfig",
    "RuntimeConfig",
    "build_runtime_config",
]

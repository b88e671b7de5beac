"""Default configuration values grouped by concern."""

from .pipeline import PIPELINE_SECTION_MAP
from .server import SERVER_SECTION_MAP

__all__ = ["PIPELINE_SECTION_MAP", "SERVER_SECTION_MAP"]

"""
Animated weather-radar GIF rendering and caching for the home dashboard.
"""

from .app import RadarAnimationService
from .config import Config, load_config
from .coordinator import RenderCoordinator
from .errors import RadarRenderError, RenderErrorKind, TileFetchError
from .models import CacheMeta, GifResult, RadarState

__all__ = [
    "CacheMeta",
    "Config",
    "GifResult",
    "RadarAnimationService",
    "RadarRenderError",
    "RadarState",
    "RenderCoordinator",
    "RenderErrorKind",
    "TileFetchError",
    "load_config",
]

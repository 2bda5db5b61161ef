"""
Lazily built fetch engines, one per engine type.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from ...config import ConfigurationError, EngineProfile
from ...types import EngineType
from ...utils.logging import get_logger
from .base import FetchEngine
from .browser import HeadlessBrowserEngine
from .crawl import CrawlFrameworkEngine
from .static import StaticFetchEngine

logger = get_logger(__name__)

EngineFactory = Callable[[EngineProfile], FetchEngine]

DEFAULT_FACTORIES: Dict[EngineType, EngineFactory] = {
    EngineType.STATIC: StaticFetchEngine,
    EngineType.HEADLESS_BROWSER: HeadlessBrowserEngine,
    EngineType.CRAWL_FRAMEWORK: CrawlFrameworkEngine,
}


class EngineRegistry:
    """Owns the engines of one worker; builds each on first use."""

    def __init__(
        self,
        profiles: Mapping[EngineType, EngineProfile],
        factories: Optional[Mapping[EngineType, EngineFactory]] = None,
        engines: Optional[Mapping[EngineType, FetchEngine]] = None,
    ):
        self.profiles = dict(profiles)
        self.factories = dict(DEFAULT_FACTORIES)
        if factories:
            self.factories.update(factories)
        self._engines: Dict[EngineType, FetchEngine] = dict(engines or {})

    def get(self, engine_type: EngineType) -> FetchEngine:
        """
        Engine for ``engine_type``, built from its profile on first use.

        Raises:
            ConfigurationError: If no profile is configured for the type.
        """
        engine_type = EngineType(engine_type)
        engine = self._engines.get(engine_type)
        if engine is None:
            profile = self.profiles.get(engine_type)
            if profile is None:
                raise ConfigurationError(f"No engine profile configured for '{engine_type.value}'")
            engine = self.factories[engine_type](profile)
            self._engines[engine_type] = engine
            logger.info(
                "Initialized fetch engine",
                engine=engine_type.value,
                max_concurrency=profile.max_concurrency,
                timeout=profile.timeout,
            )
        return engine

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {engine_type.value: engine.get_stats() for engine_type, engine in self._engines.items()}

    async def close(self) -> None:
        """Close every engine that was built."""
        for engine_type, engine in list(self._engines.items()):
            try:
                await engine.close()
            except Exception as e:
                logger.error("Error closing fetch engine", engine=engine_type.value, error=str(e))
        self._engines.clear()

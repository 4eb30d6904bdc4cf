"""Runtime loading of document processor plugins.

A plugin library is a Python module file placed in the plugin directory, or
an installed distribution exposing a ``threatdoc.plugins`` entry point. A
library declares its plugins through a ``get_plugins()`` function returning
plugin classes; libraries without that function are searched for concrete
``DocumentProcessingPlugin`` subclasses defined in the module itself.

Example plugin file (``plugins/csv_plugin.py``):

    from threatdoc.plugins import DocumentProcessingPlugin

    class CsvPlugin(DocumentProcessingPlugin):
        name = "csv"
        version = "1.0.0"
        description = "Comma separated values"

        def get_strategies(self):
            return [CsvProcessor()]

    def get_plugins():
        return [CsvPlugin]
"""

import importlib.metadata
import importlib.util
import inspect
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Optional, TypeVar

import anyio

from threatdoc.config import Settings, get_settings
from threatdoc.document_processors.base import DocumentProcessor
from threatdoc.document_processors.ocr import OcrEngine
from threatdoc.document_processors.registry import StrategyRegistry

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "threatdoc.plugins"
PLUGIN_FACTORY = "get_plugins"

T = TypeVar("T")


class PluginContext:
    """Service resolution for plugins during initialization.

    Services are looked up by type. The registry and settings are always
    available; the OCR engine only when OCR is configured.
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        settings: Settings,
        ocr_engine: Optional[OcrEngine] = None,
    ):
        self._services: dict[type, Any] = {
            StrategyRegistry: registry,
            Settings: settings,
        }
        if ocr_engine is not None:
            self._services[OcrEngine] = ocr_engine

    def register_service(self, service_type: type[T], instance: T) -> None:
        self._services[service_type] = instance

    def get_service(self, service_type: type[T]) -> Optional[T]:
        return self._services.get(service_type)

    def require_service(self, service_type: type[T]) -> T:
        service = self._services.get(service_type)
        if service is None:
            raise LookupError(f"Service not available: {service_type.__name__}")
        return service

    @property
    def registry(self) -> StrategyRegistry:
        return self._services[StrategyRegistry]

    @property
    def settings(self) -> Settings:
        return self._services[Settings]


class DocumentProcessingPlugin(ABC):
    """Base class for plugins contributing document processors."""

    name: str
    version: str = "0.0.0"
    description: str = ""

    async def initialize(self, context: PluginContext) -> None:
        """Prepare the plugin before its strategies are registered."""
        pass

    @abstractmethod
    def get_strategies(self) -> list[DocumentProcessor]:
        """Processors to register on behalf of this plugin."""
        pass

    async def dispose(self) -> None:
        """Release resources after the strategies have been unregistered."""
        pass


@dataclass(frozen=True)
class PluginDescriptor:
    name: str
    version: str
    description: str
    source: str
    """Library the plugin was loaded from (file path or entry point)"""

    strategies: tuple[str, ...]
    extensions: tuple[str, ...]


@dataclass
class _LoadedPlugin:
    plugin: DocumentProcessingPlugin
    descriptor: PluginDescriptor
    library: str


class PluginLoadError(Exception):
    pass


class PluginHost:
    """Loads plugins at runtime and manages their strategies in a registry.

    Loading is partial-success: a library that fails to import, or a plugin
    that fails to initialize, is logged and skipped without affecting the
    others.

    Example:
        async with PluginHost(get_registry()) as host:
            await host.load_directory("/opt/threatdoc/plugins")
            document = await host.registry.process("indicators.csv")
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        settings: Optional[Settings] = None,
        ocr_engine: Optional[OcrEngine] = None,
    ):
        self.registry = registry
        self.context = PluginContext(registry, settings or get_settings(), ocr_engine)
        self._plugins: dict[str, _LoadedPlugin] = {}
        self._libraries: dict[str, Optional[ModuleType]] = {}
        self._lock = anyio.Lock()

    async def __aenter__(self) -> "PluginHost":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def plugins(self) -> list[PluginDescriptor]:
        return [loaded.descriptor for loaded in self._plugins.values()]

    def is_library_loaded(self, library: str) -> bool:
        return library in self._libraries

    async def load_directory(self, path: str | Path) -> int:
        """Load every plugin library in a directory (non-recursive).

        Files whose name starts with an underscore are skipped.

        Returns:
            Number of plugins loaded
        """
        directory = Path(path)
        if not directory.is_dir():
            logger.warning(f"Plugin directory not found: {directory}")
            return 0

        loaded = 0
        async with self._lock:
            for file in sorted(directory.glob("*.py")):
                if file.name.startswith("_"):
                    continue
                loaded += await self._load_file(file)

        logger.info(f"Loaded {loaded} plugin(s) from {directory}")
        return loaded

    async def load_file(self, path: str | Path) -> bool:
        """Load the plugins of a single library file.

        Returns:
            True if at least one plugin was loaded; False when the library
            was already loaded or nothing could be loaded from it
        """
        async with self._lock:
            return await self._load_file(Path(path)) > 0

    async def _load_file(self, path: Path) -> int:
        library = path.stem
        if library in self._libraries:
            logger.info(f"Plugin library '{library}' already loaded, skipping")
            return 0

        module_name = f"_threatdoc_plugin_{library}"
        try:
            module = _import_module(module_name, path)
            plugin_types = _discover_plugins(module)
        except Exception as e:
            logger.error(f"Failed to load plugin library {path}: {e}", exc_info=True)
            sys.modules.pop(module_name, None)
            return 0

        loaded = await self._activate_all(plugin_types, library, str(path))
        if loaded:
            self._libraries[library] = module
        else:
            sys.modules.pop(module_name, None)
        return loaded

    async def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """Load plugins advertised by installed distributions.

        Each entry point may reference a plugin class or a factory returning
        plugin classes.

        Returns:
            Number of plugins loaded
        """
        loaded = 0
        async with self._lock:
            for entry_point in importlib.metadata.entry_points(group=group):
                library = f"{group}:{entry_point.name}"
                if library in self._libraries:
                    continue
                try:
                    target = entry_point.load()
                    plugin_types = _plugin_types_from(target)
                except Exception as e:
                    logger.error(
                        f"Failed to load plugin entry point {entry_point.name}: {e}",
                        exc_info=True,
                    )
                    continue

                count = await self._activate_all(
                    plugin_types, library, entry_point.value
                )
                if count:
                    self._libraries[library] = None
                loaded += count
        return loaded

    async def _activate_all(
        self,
        plugin_types: list[type[DocumentProcessingPlugin]],
        library: str,
        source: str,
    ) -> int:
        loaded = 0
        for plugin_type in plugin_types:
            try:
                await self._activate(plugin_type(), library, source)
                loaded += 1
            except Exception as e:
                logger.error(
                    f"Failed to initialize plugin {plugin_type.__name__} "
                    f"from {source}: {e}",
                    exc_info=True,
                )
        return loaded

    async def _activate(
        self, plugin: DocumentProcessingPlugin, library: str, source: str
    ) -> None:
        if plugin.name in self._plugins:
            raise PluginLoadError(f"Plugin '{plugin.name}' is already loaded")

        await plugin.initialize(self.context)

        registered: list[str] = []
        extensions: set[str] = set()
        try:
            for strategy in plugin.get_strategies():
                if self.registry.register(strategy):
                    registered.append(strategy.name)
                    extensions.update(
                        ext.lower() for ext in strategy.supported_extensions
                    )
                else:
                    logger.warning(
                        f"Plugin '{plugin.name}' strategy '{strategy.name}' "
                        f"conflicts with a registered processor, skipped"
                    )
        except Exception:
            for name in registered:
                self.registry.unregister(name)
            await plugin.dispose()
            raise

        descriptor = PluginDescriptor(
            name=plugin.name,
            version=plugin.version,
            description=plugin.description,
            source=source,
            strategies=tuple(registered),
            extensions=tuple(sorted(extensions)),
        )
        self._plugins[plugin.name] = _LoadedPlugin(plugin, descriptor, library)
        logger.info(
            f"Loaded plugin: {plugin.name} {plugin.version} "
            f"(strategies={list(registered)})"
        )

    async def unload(self, name: str) -> bool:
        """Unload a plugin.

        Its strategies are unregistered first, then the plugin is disposed.
        The library is dropped once none of its plugins remain.

        Returns:
            True if the plugin was loaded
        """
        async with self._lock:
            return await self._unload(name)

    async def _unload(self, name: str) -> bool:
        loaded = self._plugins.pop(name, None)
        if loaded is None:
            return False

        for strategy_name in loaded.descriptor.strategies:
            self.registry.unregister(strategy_name)

        try:
            await loaded.plugin.dispose()
        except Exception as e:
            logger.error(f"Error disposing plugin '{name}': {e}", exc_info=True)

        if not any(p.library == loaded.library for p in self._plugins.values()):
            module = self._libraries.pop(loaded.library, None)
            if module is not None:
                sys.modules.pop(module.__name__, None)

        logger.info(f"Unloaded plugin: {name}")
        return True

    async def aclose(self) -> None:
        """Unload every plugin."""
        async with self._lock:
            for name in list(self._plugins):
                await self._unload(name)


def _import_module(module_name: str, path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"Cannot import plugin library {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def _is_plugin_type(obj: object) -> bool:
    return (
        inspect.isclass(obj)
        and issubclass(obj, DocumentProcessingPlugin)
        and obj is not DocumentProcessingPlugin
        and not inspect.isabstract(obj)
    )


def _plugin_types_from(target: object) -> list[type[DocumentProcessingPlugin]]:
    """Resolve an entry point target: a plugin class or a factory of classes."""
    if _is_plugin_type(target):
        return [target]  # type: ignore[list-item]
    if callable(target):
        result = list(target())
        plugin_types = [obj for obj in result if _is_plugin_type(obj)]
        if len(plugin_types) != len(result):
            logger.warning(f"{PLUGIN_FACTORY} returned objects that are not plugins")
        return plugin_types
    raise PluginLoadError(f"Entry point target {target!r} is not a plugin")


def _discover_plugins(module: ModuleType) -> list[type[DocumentProcessingPlugin]]:
    factory = getattr(module, PLUGIN_FACTORY, None)
    if callable(factory):
        return _plugin_types_from(factory)

    return [
        obj
        for obj in vars(module).values()
        if _is_plugin_type(obj) and obj.__module__ == module.__name__
    ]

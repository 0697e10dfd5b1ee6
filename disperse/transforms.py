"""Transform registry and pipeline for Disperse.

Presets are configured per category in the ``transform`` settings::

    transform:
      js:
        terser:
          minify: {compress: true, mangle: true}
          minify-output: {}
      css:
        rcssmin:
          minify: {}

An asset asks for ``format: "minify"`` (or ``"es5+minify"`` for a chain). The
registry finds which plugin defines each preset name and binds the plugin to
the preset's options. The Transformer then runs the bound transforms in order,
threading the text and the asset's source map chain through them.

Key classes:
- TransformRegistry: Resolves (category, preset name) to a Transform.
- Transform: A plugin bound to one preset.
- Transformer: Runs a ``+`` separated chain of presets.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .logger import Logger, LogType
from .settings import ConfigurationError
from .protocols import SourceTransformer
from .sourcemap import SourceMapChain
from .transform_plugins import PluginUnavailableError, create_default_plugins

MIME_CATEGORIES = {
    "text/html": "html",
    "application/xhtml+xml": "html",
    "text/css": "css",
    "text/javascript": "js",
    "application/javascript": "js",
    "application/x-javascript": "js",
}


def category_for_mime(mime_type: str | None) -> str | None:
    """Return the transform category (html, css, js) of a MIME type."""
    if not mime_type:
        return None
    return MIME_CATEGORIES.get(mime_type.split(";")[0].strip().lower())


class PluginNotFoundError(ConfigurationError):
    """Error raised when a preset or plugin name cannot be resolved.

    Attributes:
        category: Transform category that was searched.
        name: Preset or plugin name that was requested.
    """

    def __init__(self, category: str, name: str, reason: str = "Process method not found"):
        self.category = category
        self.name = name
        super().__init__(f"{reason}: {category}/{name}")


@dataclass
class Transform:
    """A plugin bound to the options of one preset."""

    plugin: SourceTransformer
    preset: str
    options: dict[str, Any]
    output: dict[str, Any] | None = None

    @property
    def label(self) -> str:
        return f"{self.plugin.name}: {self.preset}"

    def __call__(self, value: str, chain: SourceMapChain | None = None) -> str | None:
        options = copy.deepcopy(self.options)
        output = copy.deepcopy(self.output) if self.output is not None else None
        return self.plugin.transform(value, options, output, chain)


class TransformRegistry:
    """Maps plugin names to plugins and preset names to bound transforms.

    The registry keeps no per-run state; resolved transforms can run
    concurrently for different assets.
    """

    def __init__(
        self,
        presets: Mapping[str, Any] | None = None,
        plugins: Iterable[SourceTransformer] | None = None,
        project_root: Path | None = None,
    ):
        self.presets: Mapping[str, Any] = presets or {}
        self._plugins: dict[str, SourceTransformer] = {}
        for plugin in plugins if plugins is not None else create_default_plugins(project_root):
            self.register(plugin)

    def register(self, plugin: SourceTransformer) -> None:
        """Register a plugin, replacing any plugin of the same name."""
        self._plugins[plugin.name] = plugin

    def get_plugin(self, name: str) -> SourceTransformer | None:
        return self._plugins.get(name)

    def find_preset(
        self, category: str, name: str
    ) -> tuple[str, dict[str, Any], dict[str, Any] | None] | None:
        """Find which plugin defines a preset.

        Returns:
            Tuple of (plugin name, options, output config), or None.
        """
        plugins = self.presets.get(category)
        if not isinstance(plugins, Mapping):
            return None
        for plugin_name, presets in plugins.items():
            if not isinstance(presets, Mapping) or name not in presets:
                continue
            options = presets[name]
            output = presets.get(name + "-output")
            if options is None and output is None:
                continue
            return (
                plugin_name,
                dict(options) if isinstance(options, Mapping) else {},
                dict(output) if isinstance(output, Mapping) else None,
            )
        return None

    def resolve(self, category: str, name: str) -> Transform:
        """Resolve a preset of a category to a callable transform.

        Raises:
            PluginNotFoundError: If no plugin defines the preset, the plugin
                is not registered, or it does not handle the category.
        """
        found = self.find_preset(category, name)
        if found is None:
            raise PluginNotFoundError(category, name)
        plugin_name, options, output = found
        plugin = self.get_plugin(plugin_name)
        if plugin is None:
            raise PluginNotFoundError(category, plugin_name, "Plugin not registered")
        if not plugin.supports(category):
            raise PluginNotFoundError(category, plugin_name, "Plugin does not handle category")
        return Transform(plugin=plugin, preset=name, options=options, output=output)


class Transformer:
    """Runs a chain of presets over one text."""

    def __init__(self, registry: TransformRegistry, logger: Logger | None = None):
        self.registry = registry
        self.logger = logger or Logger()

    def resolve_chain(self, category: str, format: str) -> list[Transform]:
        """Resolve every preset of a ``+`` separated chain before anything runs.

        Raises:
            PluginNotFoundError: If any preset cannot be resolved.
        """
        names = [item.strip() for item in format.split("+") if item.strip()]
        return [self.registry.resolve(category, name) for name in names]

    async def transform(
        self, category: str, format: str, value: str, chain: SourceMapChain | None = None
    ) -> str | None:
        """Run each preset of ``format`` in order.

        A plugin that fails while running is logged and skipped; the text it
        received is passed on unchanged.

        Returns:
            The final text, or None if no plugin produced a result.

        Raises:
            PluginNotFoundError: If a preset cannot be resolved.
            PluginUnavailableError: If a plugin's command line tool is missing.
        """
        transforms = self.resolve_chain(category, format)
        changed = False
        for item in transforms:
            self.logger.format_message(
                LogType.PROCESS, category, ["Transforming source...", item.plugin.name], item.preset, color="cyan"
            )
            started = time.monotonic()
            try:
                result = await asyncio.to_thread(item, value, chain)
            except (PluginUnavailableError, ConfigurationError):
                raise
            except Exception as exc:
                self.logger.write_fail(["Unable to transform source", item.plugin.name], exc)
                continue
            if result is None:
                continue
            value = result
            changed = True
            self.logger.write_time_elapsed(category, item.label, started)
        return value if changed else None

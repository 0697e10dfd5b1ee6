"""Transform plugins for Disperse.

Each plugin is an opaque function of (source text, options, output config,
source map chain) returning the transformed text, or None to mean "leave the
text as it was". Plugins that move code around fold their output map into the
chain with ``next_map``.

Key classes:
- TransformPlugin: Base class for all plugins.
- RjsminPlugin, RcssminPlugin: In-process minifiers.
- ExecutablePlugin: Base for plugins backed by an npm command line tool.
- TerserPlugin, UglifyJSPlugin, BabelPlugin, CleanCSSPlugin,
  HTMLMinifierPlugin, PrettierPlugin: The command line plugins.
"""

from __future__ import annotations

import copy
import json
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import rcssmin
import rjsmin

from .executable_utils import find_executable, run_executable
from .sourcemap import SourceMapChain, source_mapping_comment

CATEGORY_EXTENSIONS = {"html": ".html", "css": ".css", "js": ".js"}


class PluginUnavailableError(Exception):
    """Error raised when a plugin's command line tool is not installed.

    Attributes:
        plugin: Plugin name.
        hint: Install command.
    """

    def __init__(self, plugin: str, hint: str):
        self.plugin = plugin
        self.hint = hint
        super().__init__(f"{plugin} not found. Install with `{hint}`")


class TransformPlugin(ABC):
    """Base class for transform plugins."""

    name: str = ""
    categories: frozenset[str] = frozenset()

    def supports(self, category: str) -> bool:
        return category in self.categories

    @abstractmethod
    def transform(
        self,
        value: str,
        options: dict[str, Any],
        output: dict[str, Any] | None,
        chain: SourceMapChain | None,
    ) -> str | None:
        """Transform source text.

        Args:
            value: Source text.
            options: Preset options (a private copy).
            output: Optional output configuration of the preset.
            chain: Source map chain of the asset.

        Returns:
            The transformed text, or None to keep the text unchanged.
        """
        ...


class RjsminPlugin(TransformPlugin):
    """Minifies JavaScript with rjsmin. Emits no source map."""

    name = "rjsmin"
    categories = frozenset({"js"})

    def transform(self, value, options, output, chain):
        return rjsmin.jsmin(value, keep_bang_comments=bool(options.get("keep_bang_comments")))


class RcssminPlugin(TransformPlugin):
    """Minifies CSS with rcssmin. Emits no source map."""

    name = "rcssmin"
    categories = frozenset({"css"})

    def transform(self, value, options, output, chain):
        return rcssmin.cssmin(value, keep_bang_comments=bool(options.get("keep_bang_comments")))


class ExecutablePlugin(TransformPlugin):
    """Runs an npm command line tool inside a scratch directory.

    Subclasses build the command line; this class writes the input (and the
    chain's current map) to disk, runs the tool, reads the result back and
    folds any map the tool wrote into the chain.
    """

    executable: str = ""
    package: str = ""
    writes_stdout = False

    def __init__(self, project_root: Path | None = None):
        self.project_root = project_root

    def transform(self, value, options, output, chain):
        binary = find_executable(self.executable, self.project_root)
        if not binary:
            raise PluginUnavailableError(self.name, f"npm install -D {self.package or self.name}")
        category = self._category_of(chain)
        ext = CATEGORY_EXTENSIONS.get(category, ".txt")
        options = copy.deepcopy(options)
        include_sources = True
        source_map = options.pop("sourceMap", None)
        if isinstance(source_map, dict) and source_map.get("includeSources") is False:
            include_sources = False
        input_map = chain.map if chain is not None else None
        want_map = chain is not None and (input_map is not None or bool(source_map))

        with tempfile.TemporaryDirectory(prefix="disperse-") as tmp:
            workdir = Path(tmp)
            source = workdir / f"source{ext}"
            target = workdir / f"output{ext}"
            source.write_text(value, encoding="utf-8")
            map_in = None
            if input_map is not None:
                map_in = workdir / f"source{ext}.map"
                map_in.write_text(json.dumps(input_map), encoding="utf-8")
            map_out = workdir / f"output{ext}.map" if want_map else None
            command = self.build_command(
                binary, source, target, map_in, map_out, options, include_sources, workdir
            )
            stdout = run_executable(command, cwd=workdir)
            if self.writes_stdout:
                code = stdout
            elif target.exists():
                code = target.read_text(encoding="utf-8")
            else:
                return None
            code = self.strip_mapping_comment(code)
            if chain is not None and map_out is not None and map_out.exists():
                chain.next_map(self.name, map_out.read_text(encoding="utf-8"), code, include_sources)
        return code

    @abstractmethod
    def build_command(
        self,
        binary: str,
        source: Path,
        target: Path,
        map_in: Path | None,
        map_out: Path | None,
        options: dict[str, Any],
        include_sources: bool,
        workdir: Path,
    ) -> list[str]:
        """Return the command line for one invocation."""
        ...

    @staticmethod
    def strip_mapping_comment(code: str) -> str:
        """Drop a trailing ``sourceMappingURL`` comment pointing into the scratch directory."""
        lines = code.rstrip("\n").split("\n")
        if lines and "sourceMappingURL=" in lines[-1]:
            lines.pop()
        return "\n".join(lines)

    def _category_of(self, chain: SourceMapChain | None) -> str:
        if chain is not None and chain.file_uri is not None:
            suffix = chain.file_uri.suffix.lower()
            for category, ext in CATEGORY_EXTENSIONS.items():
                if ext == suffix:
                    return category
        return next(iter(sorted(self.categories)), "js")

    @staticmethod
    def write_config(workdir: Path, options: dict[str, Any], name: str = "config.json") -> Path:
        path = workdir / name
        path.write_text(json.dumps(options), encoding="utf-8")
        return path


class TerserPlugin(ExecutablePlugin):
    """Minifies JavaScript with the terser CLI."""

    name = "terser"
    executable = "terser"
    categories = frozenset({"js"})

    def build_command(self, binary, source, target, map_in, map_out, options, include_sources, workdir):
        command = [binary, str(source), "-o", str(target)]
        if options:
            command += ["--config-file", str(self.write_config(workdir, options))]
        if map_out is not None:
            parts = [f"filename='{target.name}'", f"url='{map_out.name}'"]
            if map_in is not None:
                parts.append(f"content='{map_in}'")
            if include_sources:
                parts.append("includeSources")
            command += ["--source-map", ",".join(parts)]
        return command


class UglifyJSPlugin(TerserPlugin):
    """Minifies JavaScript with the uglifyjs CLI (same flags as terser)."""

    name = "uglify-js"
    executable = "uglifyjs"
    package = "uglify-js"


class BabelPlugin(ExecutablePlugin):
    """Transpiles JavaScript with the babel CLI."""

    name = "babel"
    executable = "babel"
    package = "@babel/cli @babel/core"
    categories = frozenset({"js"})

    def build_command(self, binary, source, target, map_in, map_out, options, include_sources, workdir):
        config = dict(options)
        if map_in is not None:
            config["inputSourceMap"] = json.loads(map_in.read_text(encoding="utf-8"))
        if map_out is not None:
            config["sourceMaps"] = True
        command = [binary, str(source), "--out-file", str(target)]
        command += ["--config-file", str(self.write_config(workdir, config, "babel.config.json"))]
        if map_out is not None:
            command.append("--source-maps")
        return command


class CleanCSSPlugin(ExecutablePlugin):
    """Minifies CSS with the cleancss CLI."""

    name = "clean-css"
    executable = "cleancss"
    package = "clean-css-cli"
    categories = frozenset({"css"})

    def build_command(self, binary, source, target, map_in, map_out, options, include_sources, workdir):
        command = [binary, "-o", str(target)]
        level = options.get("level")
        if level is not None:
            command.append(f"-O{int(level)}")
        if map_out is not None:
            command.append("--source-map")
            if include_sources:
                command.append("--source-map-inline-sources")
        if map_in is not None:
            # cleancss picks up the input map from the comment in the source
            with open(source, "a", encoding="utf-8") as f:
                f.write(source_mapping_comment("css", map_in.name))
        command.append(str(source))
        return command


class HTMLMinifierPlugin(ExecutablePlugin):
    """Minifies HTML with the html-minifier-terser CLI. Emits no source map."""

    name = "html-minifier-terser"
    executable = "html-minifier-terser"
    categories = frozenset({"html"})

    def build_command(self, binary, source, target, map_in, map_out, options, include_sources, workdir):
        command = [binary, "-o", str(target)]
        if options:
            command += ["--config-file", str(self.write_config(workdir, options))]
        command.append(str(source))
        return command


class PrettierPlugin(ExecutablePlugin):
    """Formats HTML, CSS or JavaScript with the prettier CLI. Emits no source map."""

    name = "prettier"
    executable = "prettier"
    categories = frozenset({"html", "css", "js"})
    writes_stdout = True

    def build_command(self, binary, source, target, map_in, map_out, options, include_sources, workdir):
        command = [binary, "--no-editorconfig"]
        if options:
            command += ["--config", str(self.write_config(workdir, options, ".prettierrc.json"))]
        command.append(str(source))
        return command


def create_default_plugins(project_root: Path | None = None) -> list[TransformPlugin]:
    """Return one instance of every built-in plugin."""
    return [
        RjsminPlugin(),
        RcssminPlugin(),
        TerserPlugin(project_root),
        UglifyJSPlugin(project_root),
        BabelPlugin(project_root),
        CleanCSSPlugin(project_root),
        HTMLMinifierPlugin(project_root),
        PrettierPlugin(project_root),
    ]

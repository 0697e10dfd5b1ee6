import asyncio
import json
import subprocess
from pathlib import Path

import pytest

from disperse.executable_utils import ExecutableError, find_executable
from disperse.protocols import SourceTransformer
from disperse.sourcemap import SourceMapChain
from disperse.transform_plugins import (
    PluginUnavailableError,
    RcssminPlugin,
    RjsminPlugin,
    TerserPlugin,
    TransformPlugin,
)
from disperse.transforms import PluginNotFoundError, TransformRegistry, Transformer, category_for_mime


class AppendPlugin(TransformPlugin):
    categories = frozenset({"js", "css"})

    def __init__(self, name):
        self.name = name
        self.seen_options = []

    def transform(self, value, options, output, chain):
        self.seen_options.append(options)
        options["mutated"] = True
        return value + options.get("suffix", "")


class NoChangePlugin(TransformPlugin):
    name = "noop"
    categories = frozenset({"js"})

    def transform(self, value, options, output, chain):
        return None


class BrokenPlugin(TransformPlugin):
    name = "broken"
    categories = frozenset({"js"})

    def transform(self, value, options, output, chain):
        raise RuntimeError("plugin exploded")


def make_transformer(presets, plugins):
    return Transformer(TransformRegistry(presets, plugins=plugins))


def test_category_for_mime():
    assert category_for_mime("text/javascript") == "js"
    assert category_for_mime("application/javascript; charset=utf-8") == "js"
    assert category_for_mime("text/css") == "css"
    assert category_for_mime("text/html") == "html"
    assert category_for_mime("image/png") is None
    assert category_for_mime(None) is None


def test_registry_finds_preset_and_output():
    registry = TransformRegistry(
        {"js": {"append": {"minify": {"suffix": "!"}, "minify-output": {"comments": False}}}},
        plugins=[AppendPlugin("append")],
    )
    assert registry.find_preset("js", "minify") == ("append", {"suffix": "!"}, {"comments": False})
    transform = registry.resolve("js", "minify")
    assert transform.label == "append: minify"
    assert transform.output == {"comments": False}


def test_registry_rejects_unknown_preset():
    registry = TransformRegistry({"js": {}}, plugins=[])
    with pytest.raises(PluginNotFoundError) as excinfo:
        registry.resolve("js", "missing")
    assert "Process method not found" in str(excinfo.value)


def test_registry_rejects_unregistered_plugin_and_wrong_category():
    registry = TransformRegistry(
        {"js": {"ghost": {"minify": {}}}, "html": {"noop": {"tidy": {}}}},
        plugins=[NoChangePlugin()],
    )
    with pytest.raises(PluginNotFoundError):
        registry.resolve("js", "minify")
    with pytest.raises(PluginNotFoundError):
        registry.resolve("html", "tidy")


def test_chain_runs_in_order():
    presets = {"js": {"a": {"first": {"suffix": "-1"}}, "b": {"second": {"suffix": "-2"}}}}
    transformer = make_transformer(presets, [AppendPlugin("a"), AppendPlugin("b")])
    result = asyncio.run(transformer.transform("js", "first+second", "code"))
    assert result == "code-1-2"


def test_options_are_copied_per_invocation():
    plugin = AppendPlugin("a")
    registry = TransformRegistry({"js": {"a": {"one": {"suffix": "x"}}}}, plugins=[plugin])
    transformer = Transformer(registry)
    asyncio.run(transformer.transform("js", "one", "1"))
    asyncio.run(transformer.transform("js", "one", "2"))
    assert registry.presets["js"]["a"]["one"] == {"suffix": "x"}
    assert plugin.seen_options[1] == {"suffix": "x", "mutated": True}


def test_no_change_returns_none():
    transformer = make_transformer({"js": {"noop": {"keep": {}}}}, [NoChangePlugin()])
    assert asyncio.run(transformer.transform("js", "keep", "code")) is None


def test_failed_plugin_is_skipped(capsys):
    presets = {"js": {"broken": {"fail": {}}, "a": {"tail": {"suffix": ";"}}}}
    transformer = make_transformer(presets, [BrokenPlugin(), AppendPlugin("a")])
    result = asyncio.run(transformer.transform("js", "fail+tail", "code"))
    assert result == "code;"
    err = capsys.readouterr().err
    assert "Unable to transform source" in err
    assert "plugin exploded" in err


def test_missing_tool_is_not_skipped(monkeypatch):
    monkeypatch.setattr("disperse.transform_plugins.find_executable", lambda *args, **kwargs: None)
    presets = {"js": {"terser": {"minify": {}}, "a": {"tail": {"suffix": ";"}}}}
    plugin = AppendPlugin("a")
    transformer = make_transformer(presets, [TerserPlugin(), plugin])
    with pytest.raises(PluginUnavailableError):
        asyncio.run(transformer.transform("js", "minify+tail", "code"))
    assert plugin.seen_options == []


def test_unknown_preset_fails_before_running():
    plugin = AppendPlugin("a")
    transformer = make_transformer({"js": {"a": {"one": {}}}}, [plugin])
    with pytest.raises(PluginNotFoundError):
        asyncio.run(transformer.transform("js", "one+missing", "code"))
    assert plugin.seen_options == []


def test_rjsmin_and_rcssmin_plugins():
    js = RjsminPlugin().transform("var  a = 1 ;\n\n  var b = 2;", {}, None, None)
    assert js.startswith("var a=1;")
    assert "  " not in js
    css = RcssminPlugin().transform("body {\n  color : red ;\n}\n", {}, None, None)
    assert css.startswith("body{color:red")
    assert " " not in css


def test_plugins_satisfy_protocol():
    assert isinstance(RjsminPlugin(), SourceTransformer)
    assert isinstance(TerserPlugin(), SourceTransformer)


def test_terser_plugin_folds_map_into_chain(monkeypatch, tmp_path):
    calls = {}

    def fake_run(cmd, **kwargs):
        calls["cmd"] = cmd
        target = Path(cmd[cmd.index("-o") + 1])
        target.write_text("min();\n//# sourceMappingURL=output.js.map\n", encoding="utf-8")
        map_data = {"version": 3, "sources": ["source.js"], "names": [], "mappings": "AAAA"}
        target.with_name(target.name + ".map").write_text(json.dumps(map_data), encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr("disperse.transform_plugins.find_executable", lambda name, root=None: "/bin/terser")
    monkeypatch.setattr("disperse.executable_utils.subprocess.run", fake_run)

    chain = SourceMapChain(None, tmp_path / "app.js", "min ( ) ;")
    result = TerserPlugin().transform("min ( ) ;", {"sourceMap": {"includeSources": True}}, None, chain)
    assert result == "min();"
    assert calls["cmd"][0] == "/bin/terser"
    assert "--source-map" in calls["cmd"]
    assert chain.modified
    assert chain.map["sourcesContent"] == ["min ( ) ;"]
    assert chain.map["file"] == "app.js"


def test_terser_failure_raises(monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Parse error")

    monkeypatch.setattr("disperse.transform_plugins.find_executable", lambda name, root=None: "/bin/terser")
    monkeypatch.setattr("disperse.executable_utils.subprocess.run", fake_run)
    with pytest.raises(ExecutableError, match="Parse error"):
        TerserPlugin().transform("x", {}, None, None)


def test_missing_executable_raises(monkeypatch):
    monkeypatch.setattr("disperse.executable_utils.shutil.which", lambda name: None)
    with pytest.raises(PluginUnavailableError) as excinfo:
        TerserPlugin().transform("x", {}, None, None)
    assert excinfo.value.hint == "npm install -D terser"


def test_executable_found_in_node_modules(monkeypatch, tmp_path):
    monkeypatch.setattr("disperse.executable_utils.shutil.which", lambda name: None)
    local = tmp_path / "node_modules" / ".bin" / "terser"
    local.parent.mkdir(parents=True)
    local.write_text("#!/bin/sh\n", encoding="utf-8")
    assert find_executable("terser", tmp_path) == str(local)
    assert find_executable("terser") is None

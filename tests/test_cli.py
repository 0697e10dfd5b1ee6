import json

from click.testing import CliRunner

from disperse import __version__
from disperse.cli import cli


def parse_summary(output):
    # log lines go to stderr ahead of the JSON document
    return json.loads(output[output.index("{\n") :])


def write_request(path, assets):
    path.write_text(json.dumps({"assets": assets}), encoding="utf-8")
    return path


def test_run_writes_into_output_dir(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    request = write_request(
        tmp_path / "request.json",
        [{"filename": "a.txt", "content": "hello"}, {"pathname": "js", "filename": "app.js", "content": "x"}],
    )
    out = tmp_path / "out"
    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(out)])
    assert result.exit_code == 0
    summary = parse_summary(result.output)
    assert summary == {"success": True, "files": ["a.txt", "js/app.js"], "bytes": 6}
    assert (out / "a.txt").read_text(encoding="utf-8") == "hello"


def test_run_reads_stdin(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    body = json.dumps({"assets": [{"filename": "a.txt", "content": "hi"}]})
    result = CliRunner().invoke(cli, ["run", "-", "--dir", str(tmp_path / "out")], input=body)
    assert result.exit_code == 0
    assert parse_summary(result.output)["files"] == ["a.txt"]


def test_run_reports_failure(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    request = write_request(tmp_path / "request.json", [])
    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(tmp_path / "out")])
    assert result.exit_code == 1
    summary = parse_summary(result.output)
    assert summary["success"] is False
    assert summary["error"]["message"] == "No assets were requested"


def test_run_rejects_invalid_json(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    request = tmp_path / "request.json"
    request.write_text("{not json", encoding="utf-8")
    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(tmp_path / "out")])
    assert result.exit_code != 0
    assert "Invalid request JSON" in result.output


def test_run_keeps_writes_inside_output_dir(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    request = write_request(tmp_path / "request.json", [{"pathname": "../escaped", "filename": "x.txt", "content": "x"}])
    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(tmp_path / "out")])
    assert result.exit_code == 1
    assert parse_summary(result.output)["success"] is False
    assert not (tmp_path / "escaped" / "x.txt").exists()


def test_run_requires_disk_read_for_local_sources(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    source = tmp_path / "source.css"
    source.write_text("a{}", encoding="utf-8")
    request = write_request(tmp_path / "request.json", [{"filename": "site.css", "uri": str(source)}])
    out = tmp_path / "out"

    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(out)])
    assert result.exit_code == 1
    assert "disk_read" in result.output

    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(out), "--disk-read"])
    assert result.exit_code == 0
    assert (out / "site.css").read_text(encoding="utf-8") == "a{}"


def test_run_uses_settings_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    settings = tmp_path / "disperse.yaml"
    settings.write_text("transform:\n  css:\n    rcssmin:\n      minify: {}\n", encoding="utf-8")
    request = write_request(
        tmp_path / "request.json", [{"filename": "site.css", "content": "a {\n  color : red ;\n}\n", "format": "minify"}]
    )
    out = tmp_path / "out"
    result = CliRunner().invoke(cli, ["run", str(request), "--dir", str(out)])
    assert result.exit_code == 0
    assert (out / "site.css").read_text(encoding="utf-8").startswith("a{color:red")


def test_check_prints_verdicts(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    settings = tmp_path / "gate.yaml"
    settings.write_text("disk_read:\n  - /public/*\nunc_write: true\n", encoding="utf-8")
    result = CliRunner().invoke(cli, ["check", "/public/x.png", "--settings", str(settings)])
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines == [
        "disk_read   allow",
        "disk_write  deny",
        "unc_read    deny",
        "unc_write   allow",
    ]

    result = CliRunner().invoke(cli, ["check", "/private/x.png", "--settings", str(settings)])
    assert result.output.splitlines()[0] == "disk_read   deny"


def test_version_option():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_main_invokes_cli(monkeypatch):
    import disperse.cli as cli_mod

    called = {}

    def fake_cli():
        called["ran"] = True

    monkeypatch.setattr(cli_mod, "cli", fake_cli)
    cli_mod.main()
    assert called["ran"]

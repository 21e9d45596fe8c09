import json
from pathlib import Path

from bs4 import BeautifulSoup
from click.testing import CliRunner

import cli as cli_module
from page_mirror import (
    FailedReference,
    JobStatus,
    MirrorJob,
    MirrorResult,
    ReferenceKind,
    ResourceReference,
    RootFetchError,
)


def _result(output):
    soup = BeautifulSoup('<link rel="stylesheet" href="/a.css"><img src="/b.png">', "html.parser")
    css = ResourceReference(ReferenceKind.STYLESHEET, "/a.css", soup.link, "href", "https://example.com/a.css", "css/a.css")
    img = ResourceReference(ReferenceKind.IMAGE, "/b.png", soup.img, "src", "https://example.com/b.png", "images/b.png")
    job = MirrorJob("https://example.com/", Path(output), status=JobStatus.COMPLETED)
    return MirrorResult(job, (css,), (FailedReference(img, "HTTP 404"),), Path(output) / "index.html")


def test_mirror_reports_failures(monkeypatch):
    calls = {}

    async def fake_mirror_page(url, output, config):
        calls["args"] = (url, output, config)
        return _result(output)

    monkeypatch.setattr(cli_module, "mirror_page", fake_mirror_page)
    runner = CliRunner()
    result = runner.invoke(
        cli_module.cli,
        [
            "mirror",
            "https://example.com/",
            "-o",
            "site",
            "-c",
            "2",
            "--no-format",
            "--timeout",
            "12.5",
            "--user-agent",
            "mirror-test/2.0",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "1 assets saved, 1 failed" in result.output
    assert "failed image: /b.png (HTTP 404)" in result.output
    url, output, config = calls["args"]
    assert url == "https://example.com/"
    assert output == "site"
    assert config.max_concurrency == 2
    assert config.format_assets is False
    assert config.timeout == 12.5
    assert config.user_agent == "mirror-test/2.0"


def test_mirror_json_summary(monkeypatch):
    async def fake_mirror_page(url, output, config):
        return _result(output)

    monkeypatch.setattr(cli_module, "mirror_page", fake_mirror_page)
    result = CliRunner().invoke(cli_module.cli, ["mirror", "https://example.com/", "--json"])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary["status"] == "completed"
    assert summary["succeeded"][0]["destination_path"] == "css/a.css"
    assert summary["failed"][0]["original_value"] == "/b.png"
    assert summary["failed"][0]["reason"] == "HTTP 404"


def test_root_failure_exits_with_error(monkeypatch):
    async def fake_mirror_page(url, output, config):
        raise RootFetchError(url, "HTTP 500")

    monkeypatch.setattr(cli_module, "mirror_page", fake_mirror_page)
    result = CliRunner().invoke(cli_module.cli, ["mirror", "https://example.com/"])

    assert result.exit_code == 1
    assert "HTTP 500" in result.output

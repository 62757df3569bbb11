"""Tests for the jobsync command line."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest
from click.testing import CliRunner

from jobsync.cli import VERSION, cli
from jobsync.models import content_hash

MANIFEST = dedent(
    """\
    apiVersion: jobsync.io/v1
    kind: ManagedJob
    metadata:
      namespace: ns1
      name: demo
      annotations:
        jobsync.io/autosync: "true"
    spec:
      script: echo hi
    """
)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def manifests_dir(tmp_path: Path) -> Path:
    (tmp_path / "demo.yaml").write_text(MANIFEST)
    return tmp_path


class TestCli:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert VERSION in result.output

    def test_validate(self, runner: CliRunner, manifests_dir: Path) -> None:
        result = runner.invoke(cli, ["validate", str(manifests_dir)])

        assert result.exit_code == 0
        assert "ns1/demo (autosync)" in result.output
        assert "1 manifests valid" in result.output

    def test_validate_quiet(self, runner: CliRunner, manifests_dir: Path) -> None:
        result = runner.invoke(cli, ["validate", "--quiet", str(manifests_dir)])

        assert result.exit_code == 0
        assert "ns1/demo" not in result.output

    def test_validate_reports_errors(self, runner: CliRunner, manifests_dir: Path) -> None:
        (manifests_dir / "bad.yaml").write_text("- not a mapping\n")

        result = runner.invoke(cli, ["validate", str(manifests_dir)])

        assert result.exit_code == 1
        assert "bad.yaml" in result.output

    def test_hash(self, runner: CliRunner, manifests_dir: Path) -> None:
        result = runner.invoke(cli, ["hash", str(manifests_dir / "demo.yaml")])

        assert result.exit_code == 0
        assert result.output.strip() == f"ns1/demo\t{content_hash({'script': 'echo hi'})}"

    def test_render(self, runner: CliRunner, manifests_dir: Path) -> None:
        result = runner.invoke(cli, ["render", str(manifests_dir / "demo.yaml")])

        assert result.exit_code == 0
        assert "# ns1/demo" in result.output
        assert "<script>echo hi</script>" in result.output

    def test_render_invalid_spec(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "demo.yaml"
        path.write_text(MANIFEST.replace("script: echo hi", "kind: freestyle"))

        result = runner.invoke(cli, ["render", str(path)])

        assert result.exit_code == 1
        assert "ns1/demo" in result.output

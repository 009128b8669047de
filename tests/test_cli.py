"""Tests for the quadctl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from fakes import (
    FakeFetcher,
    FakePortScanner,
    FakeServiceController,
    FakeVolumeStore,
    container_unit,
    install_files,
)
from typer.testing import CliRunner

from quadctl import __version__
from quadctl.cli import RuntimeContext, app
from quadctl.config import AppConfig, load_config
from quadctl.exit_codes import ExitCode
from quadctl.locking import LockManager
from quadctl.logging import StructuredLogger

runner = CliRunner()


def _write_config(tmp_path: Path, unit_sets: list[dict[str, object]]) -> Path:
    cfg = tmp_path / "quadctl.yml"
    cfg.write_text(
        yaml.safe_dump(
            {
                "state_dir": str(tmp_path / "state"),
                "logs_dir": str(tmp_path / "logs"),
                "runtime_dir": str(tmp_path / "run"),
                "lock_timeout": 1.0,
                "install": {
                    "user_dir": str(tmp_path / "live" / "user"),
                    "system_dir": str(tmp_path / "live" / "system"),
                },
                "unit_sets": unit_sets,
            }
        ),
        encoding="utf-8",
    )
    return cfg


def _extract_json(output: str) -> object:
    """Extract the first JSON document embedded in *output*."""
    starts = [index for index in (output.find("{"), output.find("[")) if index != -1]
    assert starts, f"No JSON payload found in output: {output}"
    return json.loads(output[min(starts) :])


def _operations(config: AppConfig) -> list[dict[str, object]]:
    path = config.logs_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class Harness:
    """A runtime wired to in-memory collaborators."""

    def __init__(self, tmp_path: Path, unit_sets: list[dict[str, object]]) -> None:
        self.config = load_config(_write_config(tmp_path, unit_sets), env={})
        self.fetcher = FakeFetcher()
        self.services = FakeServiceController()
        self.volumes = FakeVolumeStore()
        self.scanner = FakePortScanner()

    def runtime(self) -> RuntimeContext:
        return RuntimeContext(
            config=self.config,
            locks=LockManager(self.config.runtime_dir, default_timeout=1.0),
            logger=StructuredLogger(self.config.logs_dir),
            fetcher=self.fetcher,
            services=self.services,
            volumes=self.volumes,
            port_scanner=self.scanner,
            sleep=lambda _seconds: None,
        )

    def invoke(self, *args: str):
        return runner.invoke(app, list(args), obj=self.runtime())


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """Harness with two remote unit-sets and one externally managed set."""
    h = Harness(
        tmp_path,
        [
            {"name": "web", "source": "https://git.example/web.git"},
            {"name": "db", "source": "https://git.example/db.git"},
            {"name": "base", "managed_externally": True},
        ],
    )
    h.fetcher.sources["https://git.example/web.git"] = {
        "web.container": container_unit("web", PublishPort="8080:80"),
    }
    h.fetcher.sources["https://git.example/db.git"] = {
        "db.container": container_unit("db", image="postgres:16"),
    }
    return h


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    cfg = _write_config(tmp_path, [])
    result = runner.invoke(app, ["--version"], env={"QUADCTL_CONFIG_FILE": str(cfg)})

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    cfg = _write_config(tmp_path, [])
    result = runner.invoke(app, env={"QUADCTL_CONFIG_FILE": str(cfg)})

    assert result.exit_code == 0
    assert "Quadlet unit-set lifecycle manager" in result.stdout


def test_invalid_config_exits_with_environment_code(tmp_path: Path) -> None:
    """Configuration errors abort with the environment exit code."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("unit_sets:\n  - name: a\n    scope: global\n")

    result = runner.invoke(app, ["--config-file", str(cfg), "staged"], env={})

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "Configuration error" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits JSON with the resolved configuration."""
    cfg = _write_config(tmp_path, [{"name": "web", "source": "/srv/web"}])

    result = runner.invoke(app, ["config", "show", "--json"], env={"QUADCTL_CONFIG_FILE": str(cfg)})

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["unit_sets"][0]["name"] == "web"


def test_config_show_renders_table(tmp_path: Path) -> None:
    """`config show` prints the merged configuration in a table."""
    cfg = _write_config(tmp_path, [])

    result = runner.invoke(app, ["config", "show"], env={"QUADCTL_CONFIG_FILE": str(cfg)})

    assert result.exit_code == 0
    assert "state_dir" in result.stdout
    assert "lock_timeout" in result.stdout


def test_validate_reports_port_conflict_as_warning(harness: Harness, tmp_path: Path) -> None:
    """A listening port warns but validation still passes."""
    directory = tmp_path / "candidate"
    install_files(directory, {"web.container": container_unit("web", PublishPort="8080:80")})
    harness.scanner.ports = {8080}

    result = harness.invoke("validate", str(directory))

    assert result.exit_code == 0, result.stdout
    assert "warning" in result.stdout
    assert "8080" in result.stdout
    assert "invalid" not in result.stdout
    assert "0 error(s)" in result.stdout


def test_validate_json_and_failure_exit_code(harness: Harness, tmp_path: Path) -> None:
    """Validation errors exit with the validation code; JSON carries the report."""
    directory = tmp_path / "candidate"
    install_files(directory, {"bad.container": "[Container]\n"})

    result = harness.invoke("validate", str(directory), "--json")

    assert result.exit_code == ExitCode.VALIDATION
    payload = _extract_json(result.stdout)
    assert payload["ok"] is False
    assert payload["errors"][0]["code"] == "missing-image"


def test_stage_diff_apply_flow(harness: Harness) -> None:
    """The full lifecycle works through the CLI and is logged per command."""
    staged = harness.invoke("stage", "web")
    assert staged.exit_code == 0, staged.stdout
    assert "web.container: ok" in staged.stdout

    listing = harness.invoke("list", "--json")
    assert listing.exit_code == 0
    assert [entry["name"] for entry in _extract_json(listing.stdout)] == ["web"]

    diff = harness.invoke("diff", "web")
    assert diff.exit_code == 0
    assert "not installed" in diff.stdout

    applied = harness.invoke("apply", "web")
    assert applied.exit_code == 0, applied.stdout
    assert ("start", "web.service", "user") in harness.services.calls

    commands = [record["command"] for record in _operations(harness.config)]
    assert commands == ["stage", "staged", "diff", "apply"]


def test_diff_without_changes_says_so(harness: Harness) -> None:
    """Identical staged and installed trees report no differences."""
    harness.invoke("stage", "db")
    install_files(
        harness.config.install_dir(harness.config.unit_set("db")),
        harness.fetcher.sources["https://git.example/db.git"],
    )

    result = harness.invoke("diff", "db")

    assert result.exit_code == 0
    assert "No differences" in result.stdout


def test_diff_of_unstaged_set_fails(harness: Harness) -> None:
    """Diffing a set that is not staged is a validation error."""
    result = harness.invoke("diff", "web")

    assert result.exit_code == ExitCode.VALIDATION
    assert "not staged" in result.stdout


def test_stage_batch_reports_failures_and_exit_code(harness: Harness) -> None:
    """Validation failures exit 2; siblings are still staged."""
    harness.fetcher.sources["https://git.example/db.git"] = {"db.container": "[Container]\n"}

    result = harness.invoke("stage", "all")

    assert result.exit_code == ExitCode.VALIDATION
    assert "Image=" in result.stdout
    assert "1 ok" in result.stdout
    record = _operations(harness.config)[-1]
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == ExitCode.VALIDATION


def test_fetch_failures_exit_with_provider_code(harness: Harness) -> None:
    """Unreachable sources are provider failures."""
    del harness.fetcher.sources["https://git.example/web.git"]

    result = harness.invoke("stage", "web")

    assert result.exit_code == ExitCode.PROVIDER
    assert "unreachable" in result.stdout


def test_unknown_names_abort_before_work(harness: Harness) -> None:
    """Unknown unit-set names are rejected with the validation code."""
    result = harness.invoke("stage", "web", "nope")

    assert result.exit_code == ExitCode.VALIDATION
    assert "nope" in result.stdout
    assert harness.fetcher.calls == []


def test_discard_removes_staged_set(harness: Harness) -> None:
    """`discard` drops staging without calling systemd."""
    harness.invoke("stage", "web")

    result = harness.invoke("discard", "web")

    assert result.exit_code == 0
    assert harness.services.calls == []
    listing = harness.invoke("staged")
    assert "No unit-sets are staged" in listing.stdout


def test_backup_list_and_restore(harness: Harness) -> None:
    """Backups can be listed and restored through the CLI."""
    live = harness.config.install_dir(harness.config.unit_set("db"))
    install_files(live, {"db.container": container_unit("db", image="postgres:16")})

    backup = harness.invoke("backup", "db")
    assert backup.exit_code == 0, backup.stdout

    listing = harness.invoke("backups", "db", "--json")
    assert listing.exit_code == 0
    snapshots = _extract_json(listing.stdout)
    assert len(snapshots) == 1
    backup_id = snapshots[0]["backup_id"]

    (live / "db.container").write_text("changed")
    restored = harness.invoke("restore", "db", backup_id)
    assert restored.exit_code == 0, restored.stdout
    assert "Restored" in restored.stdout
    assert "postgres:16" in (live / "db.container").read_text()


def test_restore_missing_backup_exit_code(harness: Harness) -> None:
    """Restoring without any backup is a validation error."""
    result = harness.invoke("restore", "db")

    assert result.exit_code == ExitCode.VALIDATION
    assert "No backups found" in result.stdout


def test_partial_restore_is_highlighted(harness: Harness) -> None:
    """Volume import failures exit with the provider code and warn loudly."""
    live = harness.config.install_dir(harness.config.unit_set("db"))
    install_files(
        live,
        {"db.container": container_unit("db", Volume="pgdata:/data", SecurityLabelDisable="true")},
    )
    harness.volumes.volumes["pgdata"] = b"payload"
    assert harness.invoke("backup", "db").exit_code == 0
    harness.volumes.fail_import = {"pgdata"}

    result = harness.invoke("restore", "db")

    assert result.exit_code == ExitCode.PROVIDER
    assert "PARTIAL RESTORE" in result.stdout


def test_backup_rejects_unknown_scope(harness: Harness) -> None:
    """Only user and system scopes are accepted."""
    result = harness.invoke("backup", "all", "--scope", "global")

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unsupported scope" in result.stdout


def test_apply_managed_set_fails(harness: Harness) -> None:
    """Externally managed sets cannot be applied."""
    result = harness.invoke("apply", "base")

    assert result.exit_code == ExitCode.PROVIDER
    assert "managed externally" in result.stdout


def test_apply_records_lock_wait_and_created_backups(harness: Harness) -> None:
    """Batch records carry the lock wait and the pre-apply snapshot ids."""
    live = harness.config.install_dir(harness.config.unit_set("db"))
    install_files(live, {"db.container": container_unit("db", image="postgres:15")})
    harness.invoke("stage", "db")

    result = harness.invoke("apply", "db")

    assert result.exit_code == 0, result.stdout
    record = _operations(harness.config)[-1]
    assert isinstance(record["lock_wait_ms"], int)
    item = record["result"]["context"]["batch"]["items"][0]
    assert record["result"]["backups"] == [f"db:{item['detail']['backup_id']}"]
    assert record["steps"][0]["name"] == "backup.pre-apply"


def test_validate_logs_inventory_counts(harness: Harness, tmp_path: Path) -> None:
    """The validate record summarises what the report found."""
    directory = tmp_path / "candidate"
    install_files(directory, {"web.container": container_unit("web", PublishPort="8080:80")})

    result = harness.invoke("validate", str(directory))

    assert result.exit_code == 0, result.stdout
    context = _operations(harness.config)[-1]["result"]["context"]
    assert context["units"] == 1
    assert context["errors"] == 0
    assert context["ports"] == 1


def test_diff_summarises_changes_by_status(harness: Harness) -> None:
    """Changed sets end with per-status counts on screen and in the log."""
    live = harness.config.install_dir(harness.config.unit_set("db"))
    install_files(
        live,
        {"db.container": container_unit("db", image="postgres:15"), "old.network": "[Network]\n"},
    )
    harness.invoke("stage", "db")

    result = harness.invoke("diff", "db")

    assert result.exit_code == 0, result.stdout
    assert "0 added, 1 modified, 1 removed" in result.stdout
    context = _operations(harness.config)[-1]["result"]["context"]
    assert (context["added"], context["modified"], context["removed"]) == (0, 1, 1)


def test_rolled_back_restore_is_reported(harness: Harness) -> None:
    """A restore that was rolled back says so and logs the kept safety snapshot."""
    live = harness.config.install_dir(harness.config.unit_set("db"))
    install_files(live, {"db.container": container_unit("db", Volume="olddata:/data")})
    harness.volumes.volumes["olddata"] = b"payload"
    assert harness.invoke("backup", "db").exit_code == 0
    (live / "db.container").write_text(container_unit("db", image="postgres:17"))
    harness.volumes.fail_import = {"olddata"}

    result = harness.invoke("restore", "db")

    assert result.exit_code == ExitCode.PROVIDER
    assert "Rolled back" in result.stdout
    assert "PARTIAL RESTORE" not in result.stdout
    assert "postgres:17" in (live / "db.container").read_text()
    record = _operations(harness.config)[-1]
    assert record["result"]["backups"][0].startswith("db:")
    assert record["steps"][-1] == {
        "name": "backup.pre-restore",
        "status": "kept",
        "at": record["steps"][-1]["at"],
        "detail": record["result"]["backups"][0],
    }


def test_restore_records_lock_wait(harness: Harness) -> None:
    """Successful restores log how long they waited for the unit-set lock."""
    live = harness.config.install_dir(harness.config.unit_set("db"))
    install_files(live, {"db.container": container_unit("db", image="postgres:16")})
    assert harness.invoke("backup", "db").exit_code == 0

    result = harness.invoke("restore", "db")

    assert result.exit_code == 0, result.stdout
    record = _operations(harness.config)[-1]
    assert isinstance(record["lock_wait_ms"], int)
    assert record["result"]["context"]["lock_wait_ms"] == record["lock_wait_ms"]

import json
import sys

import pytest
import yaml

from stagebuild.cli import EXIT_ABORTED, EXIT_CONFIG, EXIT_OK, main

from conftest import write_script


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A workspace with a config that resolves the running interpreter as the compiler pair."""
    monkeypatch.setenv("COLUMNS", "400")
    cfg = {
        "paths": {"root": str(tmp_path)},
        "toolchain": {"preferred": [[sys.executable, sys.executable]], "fallback": []},
        "logging": {"color": False},
    }
    (tmp_path / "stagebuild.yaml").write_text(yaml.safe_dump(cfg))
    (tmp_path / "src" / "xetla" / "include").mkdir(parents=True)
    (tmp_path / "src" / "xetla" / "include" / "xetla.hpp").write_text("#pragma once\n")
    (tmp_path / "src" / "dpl").mkdir(parents=True)
    (tmp_path / "src" / "dpl" / "dpl.h").write_text("#pragma once\n")
    write_script(tmp_path / "src" / "platform" / "install.sh", 'echo "building platform"\necho boom >&2\nexit 3\n')
    manifest = {
        "stages": [
            {"id": 1, "label": "Toolchains", "components": [
                {"name": "xetla", "path": "src/xetla", "kind": "header-only"},
                {"name": "oneMKL", "path": "src/oneMKL", "kind": "cmake"},
            ]},
            {"id": 2, "label": "Platform", "components": [
                {"name": "platform", "path": "src/platform", "kind": "auto"},
            ]},
            {"id": 3, "label": "Tools", "components": [
                {"name": "dpl", "path": "src/dpl", "kind": "header-only"},
            ]},
        ]
    }
    (tmp_path / "components.yaml").write_text(yaml.safe_dump(manifest))
    return tmp_path


def status_json(capsys):
    capsys.readouterr()
    rc = main(["status", "--json"])
    return rc, json.loads(capsys.readouterr().out)


def test_run_aborts_and_reports(workspace, capsys):
    rc = main(["--no-color", "run"])
    out = capsys.readouterr().out
    assert rc == EXIT_ABORTED
    assert "aborted at stage 2" in out
    assert "platform" in out and "install" in out
    assert "boom" in out

    rc, data = status_json(capsys)
    assert rc == EXIT_ABORTED
    assert data["state"] == "aborted"
    assert data["aborted"]["component"] == "platform"
    assert data["aborted"]["phase"] == "install"
    assert [c["status"] for c in data["stages"][0]["components"]] == ["succeeded", "skipped-missing"]
    assert data["stages"][2]["components"] == []
    assert (workspace / "build" / "platform" / "logs" / "install.log").is_file()


def test_best_effort_stage_from_command_line(workspace):
    assert main(["run", "--best-effort-stage", "2"]) == EXIT_OK
    assert (workspace / "install" / "dpl" / "include" / "dpl.h").is_file()


def test_best_effort_stage_from_config(workspace):
    cfg = yaml.safe_load((workspace / "stagebuild.yaml").read_text())
    cfg["plan"] = {"best_effort_stages": [2]}
    (workspace / "stagebuild.yaml").write_text(yaml.safe_dump(cfg))
    assert main(["run"]) == EXIT_OK


def test_resume_restarts_at_aborted_stage(workspace, capsys):
    assert main(["run"]) == EXIT_ABORTED
    write_script(workspace / "src" / "platform" / "install.sh", 'mkdir -p "$PREFIX/bin"\n')
    capsys.readouterr()
    assert main(["run", "--resume"]) == EXIT_OK
    assert "resuming at stage 2" in capsys.readouterr().out
    rc, data = status_json(capsys)
    assert rc == EXIT_OK
    assert data["from_stage"] == 2
    assert data["stages"][0]["components"][0]["name"] == "xetla"
    assert main(["run", "--resume"]) == EXIT_OK


def test_to_stage_and_dry_run(workspace):
    assert main(["run", "--to-stage", "1"]) == EXIT_OK
    assert (workspace / "install" / "xetla" / "include" / "xetla.hpp").is_file()
    assert not (workspace / "install" / "dpl").exists()
    assert main(["run", "--dry-run", "--from-stage", "3"]) == EXIT_OK
    assert not (workspace / "install" / "dpl").exists()


def test_unknown_stage_is_a_usage_error(workspace):
    assert main(["run", "--from-stage", "42"]) == EXIT_CONFIG


def test_no_compiler_exits_2(workspace):
    cfg = yaml.safe_load((workspace / "stagebuild.yaml").read_text())
    cfg["toolchain"] = {"preferred": [["no-such-cc-xyz", "no-such-cxx-xyz"]], "fallback": []}
    (workspace / "stagebuild.yaml").write_text(yaml.safe_dump(cfg))
    assert main(["run"]) == EXIT_CONFIG
    assert not (workspace / "build" / "run-summary.json").exists()


def test_bad_manifest_exits_2(workspace, capsys):
    (workspace / "components.yaml").write_text("stages:\n  - id: 1\n  - id: 1\n")
    assert main(["run"]) == EXIT_CONFIG
    assert "duplicate stage" in capsys.readouterr().out
    assert main(["plan", "--manifest", str(workspace / "missing.yaml")]) == EXIT_CONFIG


def test_status_without_summary(workspace):
    assert main(["status"]) == EXIT_CONFIG


def test_plan_lists_components(workspace, capsys):
    assert main(["--no-color", "plan"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "xetla" in out and "oneMKL" in out and "missing" in out


@pytest.mark.parametrize("value", ["0", "-5"])
def test_non_positive_deadline_exits_2(workspace, capsys, value):
    assert main(["run", "--deadline", value]) == EXIT_CONFIG
    assert "--deadline must be a positive number" in capsys.readouterr().out
    assert not (workspace / "build" / "run-summary.json").exists()


def test_plan_and_verify_json(workspace, capsys):
    capsys.readouterr()
    assert main(["plan", "--json"]) == EXIT_OK
    plan = json.loads(capsys.readouterr().out)
    assert [s["id"] for s in plan["stages"]] == [1, 2, 3]
    assert plan["stages"][0]["components"][1] == {
        "name": "oneMKL", "path": str((workspace / "src" / "oneMKL").resolve()), "kind": "cmake",
        "args": [], "stage": 1, "requires": [],
    }
    assert main(["verify", "--json"]) == EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert report["errors"] == 0
    assert {"check": "source", "subject": "oneMKL", "level": "warning"}.items() <= next(
        i for i in report["items"] if i["check"] == "source" and i["subject"] == "oneMKL").items()


def test_env_script_after_run(workspace):
    assert main(["env-script"]) == EXIT_CONFIG
    assert main(["run", "--to-stage", "1"]) == EXIT_OK
    target = workspace / "env.sh"
    assert main(["env-script", "--output", str(target)]) == EXIT_OK
    assert str(workspace / "install" / "xetla") in target.read_text()


def test_verify(workspace, capsys):
    assert main(["--no-color", "verify"]) == EXIT_OK
    assert "oneMKL" in capsys.readouterr().out
    main(["run", "--to-stage", "1"])
    assert main(["verify", "--artifacts"]) == EXIT_OK


def test_config_print_and_validate(workspace, capsys):
    assert main(["config", "--print"]) == EXIT_OK
    printed = yaml.safe_load(capsys.readouterr().out)
    assert printed["build"]["build_type"] == "Release"
    assert main(["config", "--validate"]) == EXIT_OK
    bad = workspace / "bad.yaml"
    bad.write_text("build:\n  jobs: -1\n")
    assert main(["--config", str(bad), "config", "--validate"]) == EXIT_CONFIG


def test_no_command_prints_help(capsys):
    assert main([]) == EXIT_CONFIG
    assert "usage" in capsys.readouterr().out

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
SCRUBBED_ENV_VARS = ("CONTEXT_ROOT", "TOKEN_HEADROOM_POLICY", "EDITOR")

BASE_SETTINGS = {
    "context": {
        "alwaysInclude": ["README.md", "docs/missing.md"],
        "autoIncludePatterns": ["src/**/*.py"],
    },
    "permissions": {"deny": ["Read(./node_modules/**)"]},
}


def headroom_env() -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in SCRUBBED_ENV_VARS}
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(REPO_ROOT), env.get("PYTHONPATH", "")) if p)
    return env


def run_cmd(
    args: list[str],
    cwd: Path,
    expect_code: int = 0,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        args,
        cwd=str(cwd),
        text=True,
        capture_output=True,
        check=False,
        input=input_text if input_text is not None else "",
        env=env if env is not None else headroom_env(),
    )
    if proc.returncode != expect_code:
        raise AssertionError(
            f"command failed\ncwd={cwd}\nargs={args}\n"
            f"expected={expect_code} got={proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n\nstderr:\n{proc.stderr}"
        )
    return proc


def run_headroom(
    project_dir: Path,
    *headroom_args: str,
    expect_code: int = 0,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    args = [sys.executable, "-m", "token_headroom.headroom", *headroom_args, "--root", str(project_dir)]
    return run_cmd(args, cwd=REPO_ROOT, expect_code=expect_code, input_text=input_text)


def write_json(path: Path, obj: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2) + "\n", encoding="utf-8")


def load_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def backups_of(project_dir: Path, name: str) -> list[Path]:
    backup_dir = project_dir / ".claude" / "backups"
    if not backup_dir.is_dir():
        return []
    return sorted(backup_dir.glob(f"{name}.*.bak*"))


def bootstrap_project(project_dir: Path) -> None:
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / ".git").mkdir()
    (project_dir / "README.md").write_text("# Demo\n", encoding="utf-8")
    (project_dir / "src").mkdir()
    (project_dir / "src" / "app.py").write_text("print('hello')\n", encoding="utf-8")
    (project_dir / ".claudeignore").write_text(
        "# build output\nnode_modules/\ndist/\n\nnode_modules/\n*.log\n",
        encoding="utf-8",
    )
    write_json(project_dir / ".claude" / "settings.json", BASE_SETTINGS)


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    project_dir = tmp_path / "proj"
    bootstrap_project(project_dir)
    return project_dir


@pytest.fixture()
def empty_project(tmp_path: Path) -> Path:
    project_dir = tmp_path / "empty"
    project_dir.mkdir()
    (project_dir / ".git").mkdir()
    return project_dir

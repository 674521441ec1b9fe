from __future__ import annotations

import json
import signal
from pathlib import Path

import pytest

import token_headroom.writer as writer_mod
from conftest import backups_of, write_json
from token_headroom.config import RunConfig
from token_headroom.dispatch import (
    APPLIED,
    DECLINED,
    DRY_RUN,
    ERROR,
    MISSING,
    NOOP,
    PREVIEW_ONLY,
    REJECTED,
    Dispatcher,
)
from token_headroom.errors import UnknownVerb
from token_headroom.gate import ConfirmationGate
from token_headroom.headroom import Session
from token_headroom.policy import load_policy, packaged_policy_path, parse_policy
from token_headroom.report import Report
from token_headroom.verbs import VerbName, build_default_registry
from token_headroom.writer import BACKUP_REL_DIR, AtomicWriter


def make_dispatcher(project_dir: Path, config: RunConfig, policy=None, answers: list[str] | None = None):
    shown: list[str] = []
    pending = list(answers or [])
    auth = config.write_authorization()
    dispatcher = Dispatcher(
        policy=policy or load_policy(packaged_policy_path()),
        registry=build_default_registry(),
        project_root=project_dir,
        gate=ConfirmationGate(config, ask=lambda _prompt: pending.pop(0) if pending else None),
        writer=AtomicWriter(auth, project_dir / BACKUP_REL_DIR) if auth is not None else None,
        show=shown.append,
    )
    return dispatcher, shown


APPROVE_ALL = RunConfig(ci=True, force=True, allow_critical=True)


def test_immutable_path_is_rejected_without_backup(project: Path) -> None:
    agent = project / ".claude" / "agents" / "foo.md"
    agent.parent.mkdir(parents=True)
    agent.write_text("dup\ndup\n", encoding="utf-8")
    permissive = parse_policy(
        {
            "schemaVersion": 1,
            "immutable": [".claude/agents/**"],
            "editable": {".claude/agents/foo.md": ["deduplicate_patterns"]},
        }
    )
    dispatcher, shown = make_dispatcher(project, APPROVE_ALL, policy=permissive)

    result = dispatcher.dispatch(".claude/agents/foo.md", "deduplicate_patterns")

    assert result.status == REJECTED
    assert "immutable" in result.message
    assert "(not applied)" in shown
    assert agent.read_text(encoding="utf-8") == "dup\ndup\n"
    assert not (project / BACKUP_REL_DIR).exists()


def test_exception_lets_one_immutable_path_through(project: Path) -> None:
    agent = project / ".claude" / "agents" / "foo.md"
    agent.parent.mkdir(parents=True)
    agent.write_text("dup\ndup\n", encoding="utf-8")
    policy = parse_policy(
        {
            "schemaVersion": 1,
            "immutable": [".claude/agents/**"],
            "editable": {".claude/agents/foo.md": ["deduplicate_patterns"]},
            "exceptions": ["!.claude/agents/foo.md"],
        }
    )
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL, policy=policy)

    result = dispatcher.dispatch(".claude/agents/foo.md", "deduplicate_patterns")

    assert result.status == APPLIED
    assert agent.read_text(encoding="utf-8") == "dup\n"


def test_verb_not_allowed_for_target_is_rejected(project: Path) -> None:
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL)
    result = dispatcher.dispatch("ignore", "prune_alwaysInclude")
    assert result.status == REJECTED
    assert "not allowed" in result.message


def test_escaping_target_is_rejected(project: Path) -> None:
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL)
    result = dispatcher.dispatch("../elsewhere/.claudeignore", "deduplicate_patterns")
    assert result.status == REJECTED
    assert not result.ok


def test_unknown_verb_is_fatal(project: Path) -> None:
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL)
    with pytest.raises(UnknownVerb):
        dispatcher.dispatch("ignore", "delete_everything")


def test_missing_target_is_a_successful_noop(empty_project: Path) -> None:
    dispatcher, shown = make_dispatcher(empty_project, APPROVE_ALL)
    result = dispatcher.dispatch("settings", "add_permissions_deny")

    assert result.status == MISSING
    assert result.ok
    assert not (empty_project / ".claude").exists()
    assert any("not found" in line for line in shown)


def test_dedup_applies_with_backup(project: Path) -> None:
    before = (project / ".claudeignore").read_text(encoding="utf-8")
    dispatcher, shown = make_dispatcher(project, RunConfig(ci=True, force=True))

    result = dispatcher.dispatch("ignore", "deduplicate_patterns")

    assert result.status == APPLIED
    assert result.details == {"removed": ["node_modules/"], "count": 1}
    assert result.to_dict()["diff_stats"] == {"added": 0, "removed": 1}
    assert (project / ".claudeignore").read_text(encoding="utf-8") == "# build output\nnode_modules/\ndist/\n\n*.log\n"
    [backup] = backups_of(project, ".claudeignore")
    assert backup.read_text(encoding="utf-8") == before
    assert result.backup == str(backup)
    assert any(line.startswith("--- a/.claudeignore") for line in shown)

    again = dispatcher.dispatch("ignore", "deduplicate_patterns")
    assert again.status == NOOP
    assert len(backups_of(project, ".claudeignore")) == 1


def test_prune_scenario_applies_with_both_confirmations(project: Path) -> None:
    write_json(project / ".claude" / "settings.json", {"context": {"alwaysInclude": ["a.txt", "missing.txt"]}})
    (project / "a.txt").write_text("a\n", encoding="utf-8")
    dispatcher, _ = make_dispatcher(project, RunConfig(), answers=["y", "yes"])

    result = dispatcher.dispatch("settings", "prune_alwaysInclude")

    assert result.status == APPLIED
    assert result.state == "applied"
    assert result.details == {"missing": ["missing.txt"], "count": 1}
    assert json.loads((project / ".claude" / "settings.json").read_text(encoding="utf-8")) == {
        "context": {"alwaysInclude": ["a.txt"]}
    }
    [backup] = backups_of(project, "settings.json")
    assert json.loads(backup.read_text(encoding="utf-8"))["context"]["alwaysInclude"] == ["a.txt", "missing.txt"]


def test_critical_change_declined_in_ci_without_allow_critical(project: Path) -> None:
    before = (project / ".claude" / "settings.json").read_bytes()
    dispatcher, _ = make_dispatcher(project, RunConfig(ci=True, force=True))

    result = dispatcher.dispatch("settings", "add_permissions_deny")

    assert result.status == DECLINED
    assert result.state == "declined"
    assert (project / ".claude" / "settings.json").read_bytes() == before
    assert backups_of(project, "settings.json") == []


def test_dry_run_never_prompts_or_writes(project: Path) -> None:
    before = (project / ".claudeignore").read_bytes()
    dispatcher, shown = make_dispatcher(project, RunConfig(dry_run=True), answers=["y"])

    result = dispatcher.dispatch("ignore", "deduplicate_patterns")

    assert result.status == DRY_RUN
    assert result.diff
    assert (project / ".claudeignore").read_bytes() == before
    assert not (project / BACKUP_REL_DIR).exists()
    assert any("(dry-run)" in line for line in shown)


def test_preview_only_verb_never_writes(project: Path) -> None:
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL)
    result = dispatcher.dispatch("settings", "tighten_auto_include")
    assert result.status == PREVIEW_ONLY
    assert result.details == {"proposals": []}
    assert backups_of(project, "settings.json") == []


def test_invalid_json_is_an_item_error(project: Path) -> None:
    (project / ".claude" / "settings.json").write_text("{nope", encoding="utf-8")
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL)

    result = dispatcher.dispatch("settings", "prune_alwaysInclude")

    assert result.status == ERROR
    assert result.state == "aborted"
    assert (project / ".claude" / "settings.json").read_text(encoding="utf-8") == "{nope"


def test_file_changed_while_awaiting_confirmation_aborts(project: Path) -> None:
    ignore = project / ".claudeignore"

    def ask(_prompt: str) -> str:
        ignore.write_text("changed/\nchanged/\nother/\n", encoding="utf-8")
        return "y"

    config = RunConfig()
    auth = config.write_authorization()
    assert auth is not None
    dispatcher = Dispatcher(
        policy=load_policy(packaged_policy_path()),
        registry=build_default_registry(),
        project_root=project,
        gate=ConfirmationGate(config, ask=ask),
        writer=AtomicWriter(auth, project / BACKUP_REL_DIR),
        show=lambda _line: None,
    )

    result = dispatcher.dispatch("ignore", "deduplicate_patterns")

    assert result.status == ERROR
    assert "changed after preview" in result.message
    assert ignore.read_text(encoding="utf-8") == "changed/\nchanged/\nother/\n"
    assert backups_of(project, ".claudeignore") == []


def test_unreadable_target_is_an_item_error(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    original_read_bytes = Path.read_bytes

    def read_bytes(self: Path) -> bytes:
        if self.name == ".claudeignore":
            raise PermissionError(13, "Permission denied", str(self))
        return original_read_bytes(self)

    monkeypatch.setattr(Path, "read_bytes", read_bytes)
    dispatcher, shown = make_dispatcher(project, APPROVE_ALL)

    result = dispatcher.dispatch("ignore", "deduplicate_patterns")

    assert result.status == ERROR
    assert result.state == "aborted"
    assert "unable to read .claudeignore" in result.message
    assert any(line.startswith("ERROR:") for line in shown)
    assert backups_of(project, ".claudeignore") == []


@pytest.mark.skipif(not hasattr(signal, "raise_signal"), reason="signal.raise_signal unavailable")
def test_interrupted_write_is_recorded_before_the_interrupt_propagates(
    project: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_write = writer_mod.atomic_write_text

    def interrupted_write(path: Path, content: str) -> None:
        signal.raise_signal(signal.SIGINT)
        real_write(path, content)

    monkeypatch.setattr(writer_mod, "atomic_write_text", interrupted_write)
    dispatcher, _ = make_dispatcher(project, APPROVE_ALL)
    report = Report()
    session = Session(
        config=APPROVE_ALL,
        project_root=project,
        policy=dispatcher.policy,
        registry=dispatcher.registry,
        dispatcher=dispatcher,
        report=report,
    )

    with pytest.raises(KeyboardInterrupt):
        session.run_verb("ignore", VerbName.DEDUPLICATE_PATTERNS)

    assert (project / ".claudeignore").read_text(encoding="utf-8") == "# build output\nnode_modules/\ndist/\n\n*.log\n"
    [backup] = backups_of(project, ".claudeignore")
    [recorded] = report.mutations
    assert recorded.status == APPLIED
    assert recorded.state == "applied"
    assert recorded.backup == str(backup)

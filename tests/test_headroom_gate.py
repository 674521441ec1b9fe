from __future__ import annotations

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from token_headroom.config import RunConfig
from token_headroom.errors import IllegalTransition, UserDeclined
from token_headroom.gate import ChangeLifecycle, ChangeState, ConfirmationGate
from token_headroom.targets import Target
from token_headroom.verbs import PendingChange, Risk


class ScriptedAsk:
    def __init__(self, *answers: str | None) -> None:
        self.answers = list(answers)
        self.prompts: list[str] = []

    def __call__(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else None


def _change(risk: Risk) -> PendingChange:
    target = Target(
        logical_name=".claude/settings.json",
        rel_path=".claude/settings.json",
        absolute_path=Path("/tmp/proj/.claude/settings.json"),
        project_root=Path("/tmp/proj"),
        exists=True,
    )
    return PendingChange(
        verb="prune_alwaysInclude",
        risk=risk,
        target=target,
        description="",
        old_text="{}\n",
        new_text='{"a": 1}\n',
        diff="-{}\n+{\"a\": 1}\n",
    )


def _review(config: RunConfig, risk: Risk, ask: ScriptedAsk) -> tuple[bool, str, ChangeLifecycle]:
    lifecycle = ChangeLifecycle(risk=risk)
    lifecycle.advance(ChangeState.PREVIEWED)
    try:
        reason = ConfirmationGate(config, ask=ask).review(_change(risk), lifecycle)
    except UserDeclined as exc:
        return False, str(exc), lifecycle
    return True, reason, lifecycle


def test_normal_change_needs_one_confirmation() -> None:
    ask = ScriptedAsk("y")
    approved, reason, lifecycle = _review(RunConfig(), Risk.NORMAL, ask)

    assert approved
    assert lifecycle.state is ChangeState.CONFIRMED
    assert len(ask.prompts) == 1


def test_critical_change_needs_typed_yes() -> None:
    ask = ScriptedAsk("y", "yes")
    approved, reason, lifecycle = _review(RunConfig(), Risk.CRITICAL, ask)

    assert approved
    assert lifecycle.state is ChangeState.CRITICAL_CONFIRMED
    assert ask.prompts[0].startswith("[CRITICAL]")
    assert "Type 'yes'" in ask.prompts[1]


@pytest.mark.parametrize("second", ["y", "YES", "", None])
def test_critical_second_gate_accepts_only_literal_yes(second: str | None) -> None:
    approved, reason, lifecycle = _review(RunConfig(), Risk.CRITICAL, ScriptedAsk("y", second))
    assert not approved
    assert lifecycle.state is ChangeState.DECLINED


def test_force_does_not_pass_the_critical_gate_in_ci() -> None:
    approved, reason, lifecycle = _review(RunConfig(ci=True, force=True), Risk.CRITICAL, ScriptedAsk())
    assert not approved
    assert "--allow-critical" in reason
    assert lifecycle.history == [
        ChangeState.PROPOSED,
        ChangeState.PREVIEWED,
        ChangeState.CONFIRMED,
        ChangeState.DECLINED,
    ]


def test_ci_without_flags_declines_without_prompting() -> None:
    ask = ScriptedAsk("y")
    approved, reason, _ = _review(RunConfig(ci=True), Risk.NORMAL, ask)
    assert not approved
    assert ask.prompts == []


def test_ci_with_allow_critical_and_yes_approves() -> None:
    ask = ScriptedAsk()
    approved, reason, lifecycle = _review(RunConfig(ci=True, assume_yes=True, allow_critical=True), Risk.CRITICAL, ask)
    assert approved
    assert lifecycle.state is ChangeState.CRITICAL_CONFIRMED
    assert ask.prompts == []


def test_eof_at_prompt_declines() -> None:
    approved, reason, _ = _review(RunConfig(), Risk.NORMAL, ScriptedAsk(None))
    assert not approved


def test_critical_apply_requires_second_confirmation() -> None:
    lifecycle = ChangeLifecycle(risk=Risk.CRITICAL)
    lifecycle.advance(ChangeState.PREVIEWED)
    lifecycle.advance(ChangeState.CONFIRMED)
    with pytest.raises(IllegalTransition):
        lifecycle.advance(ChangeState.APPLIED)


def test_terminal_states_reject_transitions() -> None:
    lifecycle = ChangeLifecycle()
    lifecycle.advance(ChangeState.ABORTED)
    assert lifecycle.terminal
    with pytest.raises(IllegalTransition):
        lifecycle.advance(ChangeState.PREVIEWED)


def test_normal_change_can_apply_after_single_confirmation() -> None:
    lifecycle = ChangeLifecycle()
    for state in (ChangeState.PREVIEWED, ChangeState.CONFIRMED, ChangeState.APPLIED):
        lifecycle.advance(state)
    assert lifecycle.terminal


def test_run_config_is_frozen_and_validated() -> None:
    config = RunConfig(dry_run=True, log_mode="on")
    assert config.effective_log_mode == "off"
    assert config.write_authorization() is None
    assert RunConfig().write_authorization() is not None
    with pytest.raises(FrozenInstanceError):
        config.force = True  # type: ignore[misc]
    with pytest.raises(ValueError):
        RunConfig(log_mode="loud")
    with pytest.raises(ValueError):
        RunConfig(budget=0)

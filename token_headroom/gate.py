from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from token_headroom.config import RunConfig
from token_headroom.errors import IllegalTransition, UserDeclined
from token_headroom.verbs import PendingChange, Risk

logger = logging.getLogger(__name__)

Ask = Callable[[str], Optional[str]]


class ChangeState(str, Enum):
    PROPOSED = "proposed"
    PREVIEWED = "previewed"
    CONFIRMED = "confirmed"
    CRITICAL_CONFIRMED = "critical_confirmed"
    APPLIED = "applied"
    DECLINED = "declined"
    ABORTED = "aborted"


TRANSITIONS: dict[ChangeState, frozenset[ChangeState]] = {
    ChangeState.PROPOSED: frozenset({ChangeState.PREVIEWED, ChangeState.ABORTED}),
    ChangeState.PREVIEWED: frozenset({ChangeState.CONFIRMED, ChangeState.DECLINED, ChangeState.ABORTED}),
    ChangeState.CONFIRMED: frozenset(
        {ChangeState.CRITICAL_CONFIRMED, ChangeState.APPLIED, ChangeState.DECLINED, ChangeState.ABORTED}
    ),
    ChangeState.CRITICAL_CONFIRMED: frozenset({ChangeState.APPLIED, ChangeState.ABORTED}),
    ChangeState.APPLIED: frozenset(),
    ChangeState.DECLINED: frozenset(),
    ChangeState.ABORTED: frozenset(),
}


@dataclass
class ChangeLifecycle:
    """Proposed -> Previewed -> Confirmed -> (CriticalConfirmed) -> Applied.

    Declined and Aborted are terminal. Applying a critical change is only
    legal from CriticalConfirmed.
    """

    risk: Risk = Risk.NORMAL
    state: ChangeState = ChangeState.PROPOSED
    history: list[ChangeState] = field(default_factory=lambda: [ChangeState.PROPOSED])

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def advance(self, new_state: ChangeState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise IllegalTransition(f"illegal transition {self.state.value} -> {new_state.value}")
        if (
            new_state is ChangeState.APPLIED
            and self.risk is Risk.CRITICAL
            and self.state is not ChangeState.CRITICAL_CONFIRMED
        ):
            raise IllegalTransition("critical change cannot be applied without the second confirmation")
        self.state = new_state
        self.history.append(new_state)


def read_answer(prompt: str) -> str | None:
    try:
        return input(prompt)
    except EOFError:
        return None


class ConfirmationGate:
    """Two-tier approval.

    normal: one affirmative answer, or --yes/--force.
    critical: the normal gate plus a typed "yes"; --force does not satisfy the
    second gate, only --allow-critical does. Non-interactive runs without the
    needed flags are declined, never assumed approved.
    """

    def __init__(self, config: RunConfig, ask: Ask | None = None) -> None:
        self.config = config
        self.ask = ask or read_answer

    def _first_gate(self, change: PendingChange) -> tuple[bool, str]:
        if self.config.force:
            return True, "approved by --force"
        if self.config.assume_yes:
            return True, "approved by --yes"
        if not self.config.interactive:
            return False, "non-interactive run without --yes/--force"
        label = "[CRITICAL] " if change.risk is Risk.CRITICAL else ""
        answer = self.ask(f"{label}Apply {change.verb} to {change.target.rel_path}? [y/N]: ")
        if answer is not None and answer.strip().lower() in {"y", "yes"}:
            return True, "confirmed by operator"
        return False, "declined by operator"

    def _second_gate(self, change: PendingChange) -> tuple[bool, str]:
        if self.config.allow_critical:
            return True, "critical change approved by --allow-critical"
        if not self.config.interactive:
            return False, "critical change requires --allow-critical in non-interactive mode"
        answer = self.ask(f"Type 'yes' to confirm critical change to {change.target.rel_path}: ")
        if answer is not None and answer.strip() == "yes":
            return True, "critical change confirmed by operator"
        return False, "critical change not confirmed"

    def review(self, change: PendingChange, lifecycle: ChangeLifecycle) -> str:
        """Advance lifecycle through the gates; return the approval reason.

        Raises UserDeclined (with lifecycle left in Declined) when a gate is
        not passed.
        """

        critical = change.risk is Risk.CRITICAL
        approved, reason = self._first_gate(change)
        if not approved:
            lifecycle.advance(ChangeState.DECLINED)
            logger.info(
                "Declined %s on %s: %s", change.verb, change.target.rel_path, reason, extra={"critical": critical}
            )
            raise UserDeclined(reason)
        lifecycle.advance(ChangeState.CONFIRMED)

        if not critical:
            return reason

        approved, reason = self._second_gate(change)
        if not approved:
            lifecycle.advance(ChangeState.DECLINED)
            logger.info(
                "Declined %s on %s: %s", change.verb, change.target.rel_path, reason, extra={"critical": True}
            )
            raise UserDeclined(reason)
        lifecycle.advance(ChangeState.CRITICAL_CONFIRMED)
        logger.info("Critical change to %s confirmed: %s", change.target.rel_path, reason, extra={"critical": True})
        return reason

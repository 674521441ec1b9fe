from __future__ import annotations

import argparse
import os
from dataclasses import dataclass

from token_headroom.writer import WriteAuthorization, issue_write_authorization


LOG_MODES = ("off", "on", "critical")
DEFAULT_BUDGET = 200000
ROOT_ENV_VAR = "CONTEXT_ROOT"
POLICY_ENV_VAR = "TOKEN_HEADROOM_POLICY"


@dataclass(frozen=True)
class RunConfig:
    """Run-wide settings, built once from the command line and never mutated."""

    dry_run: bool = False
    verbose: bool = False
    log_mode: str = "off"
    force: bool = False
    assume_yes: bool = False
    ci: bool = False
    allow_critical: bool = False
    budget: int = DEFAULT_BUDGET
    root: str | None = None
    policy_file: str | None = None
    suggestions_file: str | None = None
    json_report: str | None = None
    action_id: str | None = None

    def __post_init__(self) -> None:
        if self.log_mode not in LOG_MODES:
            raise ValueError(f"unsupported log mode: {self.log_mode!r}; valid: {', '.join(LOG_MODES)}")
        if self.budget <= 0:
            raise ValueError(f"budget must be positive, got {self.budget}")

    @property
    def interactive(self) -> bool:
        return not self.ci

    @property
    def effective_log_mode(self) -> str:
        # dry-run > log > verbose
        return "off" if self.dry_run else self.log_mode

    def write_authorization(self) -> WriteAuthorization | None:
        return issue_write_authorization(dry_run=self.dry_run)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RunConfig":
        return cls(
            dry_run=bool(args.dry_run),
            verbose=bool(args.verbose),
            log_mode=args.log,
            force=bool(args.force),
            assume_yes=bool(args.yes),
            ci=bool(args.ci),
            allow_critical=bool(args.allow_critical),
            budget=int(args.budget),
            root=args.root or os.environ.get(ROOT_ENV_VAR) or None,
            policy_file=args.policy or os.environ.get(POLICY_ENV_VAR) or None,
            suggestions_file=args.suggestions,
            json_report=args.json_report,
            action_id=args.action,
        )

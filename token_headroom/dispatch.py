from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from token_headroom.errors import (
    PolicyViolation,
    TargetEscape,
    TargetMissing,
    UserDeclined,
    ValidationError,
    WriteError,
    WriteInterrupted,
)
from token_headroom.gate import ChangeLifecycle, ChangeState, ConfirmationGate
from token_headroom.policy import Policy
from token_headroom.preview import diff_stats
from token_headroom.targets import Target, canonical_target_name, resolve_target
from token_headroom.verbs import PendingChange, Risk, Verb, VerbRegistry
from token_headroom.writer import AtomicWriter, Backup

logger = logging.getLogger(__name__)

# MutationResult.status values
APPLIED = "applied"
NOOP = "noop"
MISSING = "missing"
DRY_RUN = "dry_run"
PREVIEW_ONLY = "preview_only"
DECLINED = "declined"
REJECTED = "rejected"
ERROR = "error"


@dataclass
class MutationResult:
    verb: str
    target: str
    status: str
    message: str
    risk: str = Risk.NORMAL.value
    state: str = ChangeState.PROPOSED.value
    diff: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    backup: str | None = None

    @property
    def ok(self) -> bool:
        return self.status not in {REJECTED, ERROR}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "verb": self.verb,
            "target": self.target,
            "status": self.status,
            "message": self.message,
            "risk": self.risk,
            "state": self.state,
            "details": self.details,
        }
        if self.diff:
            out["diff_stats"] = diff_stats(self.diff)
        if self.backup:
            out["backup"] = self.backup
        return out


class Dispatcher:
    """Runs every verb through the same pipeline.

    resolve target -> policy (verb allowed, path not immutable) -> preview ->
    confirmation -> backup + atomic write. A dispatcher built without a writer
    (dry run) stops after the preview.
    """

    def __init__(
        self,
        *,
        policy: Policy,
        registry: VerbRegistry,
        project_root: Path,
        gate: ConfirmationGate,
        writer: AtomicWriter | None,
        show: Callable[[str], None] = print,
    ) -> None:
        self.policy = policy
        self.registry = registry
        self.project_root = project_root
        self.gate = gate
        self.writer = writer
        self.show = show

    def _show_preview(self, change: PendingChange) -> None:
        self.show(f"[{change.risk.value}] {change.verb} -> {change.target.rel_path}")
        self.show(f"  {change.description}")
        if change.details:
            self.show(json.dumps(change.details, indent=2, sort_keys=True, ensure_ascii=False))
        if change.diff:
            self.show(change.diff.rstrip("\n"))
        else:
            self.show("(no changes)")

    def _show_unapplied(self, verb: Verb, target: Target, args: Sequence[str]) -> None:
        try:
            change = verb.preview(target, args)
        except (ValidationError, TargetMissing) as exc:
            self.show(f"(preview unavailable: {exc})")
            return
        self.show("(not applied)")
        self._show_preview(change)

    def _check_policy(self, target_name: str, verb_name: str, rel_path: str) -> None:
        allowed = self.policy.verbs_allowed_for(target_name)
        if verb_name not in allowed:
            raise PolicyViolation(f"verb '{verb_name}' is not allowed on '{target_name}' by policy")
        hit = self.policy.immutable_match(rel_path)
        if hit is not None:
            raise PolicyViolation(f"'{rel_path}' is immutable by policy (pattern: {hit})")

    def dispatch(self, target_name: str, verb_name: str, args: Sequence[str] = ()) -> MutationResult:
        verb = self.registry.get(verb_name)
        lifecycle = ChangeLifecycle(risk=verb.risk)
        logical = canonical_target_name(target_name)

        def result(status: str, message: str, **kw: Any) -> MutationResult:
            return MutationResult(
                verb=verb.name,
                target=logical,
                status=status,
                message=message,
                risk=verb.risk.value,
                state=lifecycle.state.value,
                **kw,
            )

        def reject(exc: PolicyViolation) -> MutationResult:
            lifecycle.advance(ChangeState.ABORTED)
            logger.warning("Policy violation: %s", exc)
            self.show(f"REJECTED: {exc}")
            return result(REJECTED, str(exc))

        try:
            target = resolve_target(target_name, self.project_root)
        except TargetEscape as exc:
            return reject(exc)
        try:
            self._check_policy(target.logical_name, verb.name, target.rel_path)
        except PolicyViolation as exc:
            if target.exists:
                self._show_unapplied(verb, target, args)
            return reject(exc)

        if not target.exists:
            logger.info("%s not found; %s is a no-op", target.rel_path, verb.name)
            self.show(f"{target.rel_path} not found; nothing to do for {verb.name}.")
            return result(MISSING, f"{target.rel_path} not found")

        try:
            change = verb.preview(target, args)
        except (ValidationError, TargetMissing) as exc:
            lifecycle.advance(ChangeState.ABORTED)
            logger.error("Preview failed for %s on %s: %s", verb.name, target.rel_path, exc)
            self.show(f"ERROR: {exc}")
            return result(ERROR, str(exc))
        lifecycle.advance(ChangeState.PREVIEWED)
        self._show_preview(change)

        if not change.writes:
            return result(PREVIEW_ONLY, f"{verb.name} is preview-only; no write performed", details=change.details)
        if not change.changed:
            return result(NOOP, f"{target.rel_path} already up to date", details=change.details)
        if self.writer is None:
            self.show(f"(dry-run) would update {target.rel_path}")
            return result(DRY_RUN, f"dry run: {target.rel_path} not written", diff=change.diff, details=change.details)

        try:
            self.gate.review(change, lifecycle)
        except UserDeclined as exc:
            self.show(f"SKIPPED: {exc}")
            return result(DECLINED, str(exc), diff=change.diff, details=change.details)

        def applied(backup: Backup) -> MutationResult:
            lifecycle.advance(ChangeState.APPLIED)
            self.show(f"OK: updated {target.rel_path} (backup: {backup.backup_path})")
            return result(
                APPLIED,
                f"updated {target.rel_path}",
                diff=change.diff,
                details=change.details,
                backup=str(backup.backup_path),
            )

        try:
            new_text = verb.apply(target, args)
            if new_text != change.new_text:
                raise ValidationError(f"{target.rel_path} changed after preview; not applying")
            backup = self.writer.apply(target.absolute_path, new_text, critical=verb.risk is Risk.CRITICAL)
        except WriteInterrupted as exc:
            exc.result = applied(exc.backup)
            raise
        except (ValidationError, TargetMissing) as exc:
            lifecycle.advance(ChangeState.ABORTED)
            logger.error("Apply aborted for %s on %s: %s", verb.name, target.rel_path, exc)
            self.show(f"ERROR: {exc}")
            return result(ERROR, str(exc), diff=change.diff, details=change.details)
        except WriteError as exc:
            lifecycle.advance(ChangeState.ABORTED)
            logger.error("Write failed for %s on %s: %s", verb.name, target.rel_path, exc)
            self.show(f"ERROR: {exc}")
            kept = str(exc.backup.backup_path) if exc.backup is not None else None
            return result(ERROR, str(exc), diff=change.diff, details=change.details, backup=kept)

        return applied(backup)

#!/usr/bin/env python3
"""
Token Headroom

CLI to analyze a project's context-token cost and tighten its `.claudeignore`
and `.claude/settings.json` through a policy-gated, previewed, backed-up
mutation pipeline.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from token_headroom.analysis import heavy_paths, load_suggestion_feed, run_analysis
from token_headroom.config import DEFAULT_BUDGET, LOG_MODES, RunConfig
from token_headroom.dispatch import APPLIED, ERROR, Dispatcher, MutationResult
from token_headroom.errors import HeadroomError, PolicyInvalid, RootNotFound, ValidationError, WriteInterrupted
from token_headroom.gate import Ask, ConfirmationGate, read_answer
from token_headroom.logging_utils import configure_logging
from token_headroom.policy import Policy, load_policy, resolve_policy_path
from token_headroom.report import TOOL_NAME, TOOL_VERSION, Report
from token_headroom.targets import IGNORE_TARGET, SETTINGS_TARGET, discover_project_root, resolve_target
from token_headroom.verbs import RECOMMENDED_IGNORE_PATTERNS, VerbName, VerbRegistry, build_default_registry
from token_headroom.writer import BACKUP_REL_DIR, AtomicWriter

logger = logging.getLogger("token_headroom.headroom")

TOP_HEAVY_PATHS = 5


@dataclass
class Session:
    config: RunConfig
    project_root: Path
    policy: Policy
    registry: VerbRegistry
    dispatcher: Dispatcher
    report: Report
    ask: Ask = read_answer
    _analysis: dict[str, Any] | None = field(default=None, repr=False)

    def analysis(self, refresh: bool = False) -> dict[str, Any]:
        if self._analysis is None or refresh:
            self._analysis = run_analysis(self.project_root, self.config.budget)
        return self._analysis

    def run_verb(self, target: str, verb: VerbName, args: Sequence[str] = ()) -> MutationResult:
        try:
            result = self.dispatcher.dispatch(target, verb.value, args)
        except WriteInterrupted as exc:
            if exc.result is not None:
                self.report.add_mutation(exc.result)
            raise
        self.report.add_mutation(result)
        logger.info("%s on %s: %s (%s)", result.verb, result.target, result.status, result.message)
        if result.status == APPLIED:
            self._analysis = None
        return result


def print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False))


def analyze_quick(session: Session) -> None:
    analysis = session.analysis()
    print_json(
        {
            "budget": analysis["budget"],
            "total_estimated_tokens": analysis["total_estimated_tokens"],
            "headroom": analysis["headroom"],
            "ignore_pattern_count": analysis["analysis_data"]["ignore_pattern_count"],
        }
    )
    if analysis["headroom"] < 0:
        session.report.add_finding(
            "warn",
            "budget",
            f"estimated context cost exceeds budget by {-analysis['headroom']} tokens",
            budget=analysis["budget"],
            total_estimated_tokens=analysis["total_estimated_tokens"],
        )


def analyze_deep(session: Session) -> None:
    print_json(session.analysis())


def suggest_ignores(session: Session) -> None:
    heavy = heavy_paths(session.analysis())
    print("Top heavy paths (not ignored):")
    if not heavy:
        print("  (none)")
    for item in heavy[:TOP_HEAVY_PATHS]:
        print(f"  {item['token_cost']:>8}  {item['path']}")
    print("Recommended ignore patterns:")
    for pattern in RECOMMENDED_IGNORE_PATTERNS:
        print(f"  {pattern}")
    if heavy:
        session.report.add_finding(
            "warn",
            "heavy_paths",
            f"{len(heavy)} unignored path(s) cost at least 1000 tokens each",
            paths=[item["path"] for item in heavy[:TOP_HEAVY_PATHS]],
        )


def suggest_settings(session: Session) -> None:
    analysis = session.analysis()
    print("autoIncludePatterns:")
    for pattern in analysis["autoInclude"] or ["(none)"]:
        print(f"  {pattern}")
    session.run_verb(SETTINGS_TARGET, VerbName.TIGHTEN_AUTO_INCLUDE)


def suggest_commands(session: Session) -> None:
    commands = session.analysis()["largeCommands"]
    print_json({"largeCommands": commands})
    if commands:
        session.report.add_finding(
            "info",
            "large_commands",
            f"{len(commands)} command file(s) above 500 tokens",
            paths=[c["path"] for c in commands],
        )


def suggest_docs(session: Session) -> None:
    docs = session.analysis()["largeDocs"]
    print_json({"largeDocs": docs})
    if docs:
        session.report.add_finding(
            "info",
            "large_docs",
            f"{len(docs)} unignored doc file(s) above 500 tokens",
            paths=[d["path"] for d in docs],
        )


def apply_ignores(session: Session) -> None:
    args: list[str] = []
    feed_ok = True
    if session.config.suggestions_file:
        feed_path = Path(session.config.suggestions_file).expanduser()
        if not feed_path.is_absolute():
            feed_path = session.project_root / feed_path
        try:
            args = [*RECOMMENDED_IGNORE_PATTERNS, *load_suggestion_feed(feed_path)]
        except ValidationError as exc:
            feed_ok = False
            print(f"ERROR: {exc}")
            logger.error("Suggestion feed rejected: %s", exc)
            session.report.add_mutation(
                MutationResult(
                    verb=VerbName.APPEND_RECOMMENDED_PATTERNS.value,
                    target=IGNORE_TARGET,
                    status=ERROR,
                    message=str(exc),
                )
            )
    if feed_ok:
        session.run_verb(IGNORE_TARGET, VerbName.APPEND_RECOMMENDED_PATTERNS, args)
    session.run_verb(IGNORE_TARGET, VerbName.DEDUPLICATE_PATTERNS)


def apply_settings(session: Session) -> None:
    session.run_verb(SETTINGS_TARGET, VerbName.PRUNE_ALWAYS_INCLUDE)
    session.run_verb(SETTINGS_TARGET, VerbName.ADD_PERMISSIONS_DENY)
    session.run_verb(SETTINGS_TARGET, VerbName.TIGHTEN_AUTO_INCLUDE)


def _open_target(session: Session, name: str) -> None:
    target = resolve_target(name, session.project_root)
    if not target.exists:
        print(f"{target.rel_path} not found; not creating it.")
        return
    editor = os.environ.get("EDITOR")
    if session.config.interactive and editor:
        rc = subprocess.call([*shlex.split(editor), str(target.absolute_path)])
        if rc != 0:
            logger.warning("Editor exited with status %s", rc)
        return
    print(target.absolute_path.read_text(encoding="utf-8", errors="replace"), end="")


def open_claudeignore(session: Session) -> None:
    _open_target(session, IGNORE_TARGET)


def open_settings(session: Session) -> None:
    _open_target(session, SETTINGS_TARGET)


def validate_json(session: Session) -> None:
    target = resolve_target(SETTINGS_TARGET, session.project_root)
    if not target.exists:
        print(f"{target.rel_path} not found; nothing to validate.")
        return
    try:
        obj = json.loads(target.absolute_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        session.report.add_finding("error", "validation", f"invalid JSON in {target.rel_path}: {exc}")
        print(f"INVALID: {target.rel_path}: {exc}")
        return
    if not isinstance(obj, dict):
        session.report.add_finding("error", "validation", f"{target.rel_path} must contain a JSON object")
        print(f"INVALID: {target.rel_path} is not a JSON object")
        return
    print(f"OK: {target.rel_path} is valid JSON")


def rerun(session: Session) -> None:
    session.analysis(refresh=True)
    analyze_quick(session)


ActionHandler = Callable[[Session], None]

ACTIONS: list[tuple[str, str, ActionHandler]] = [
    ("analyze.quick", "Quick token estimate against the budget", analyze_quick),
    ("analyze.deep", "Full analysis as JSON", analyze_deep),
    ("suggest.ignores", "Show heavy paths and recommended ignore patterns", suggest_ignores),
    ("suggest.settings", "Review autoIncludePatterns", suggest_settings),
    ("suggest.commands", "List large command files", suggest_commands),
    ("suggest.docs", "List large unignored docs", suggest_docs),
    ("apply.ignores", "Append recommended patterns to .claudeignore and deduplicate", apply_ignores),
    ("apply.settings", "Prune alwaysInclude, add permissions.deny, review autoInclude", apply_settings),
    ("tools.open_claudeignore", "Open .claudeignore", open_claudeignore),
    ("tools.open_settings", "Open .claude/settings.json", open_settings),
    ("tools.validate_json", "Validate .claude/settings.json", validate_json),
    ("tools.rerun", "Re-run the quick analysis", rerun),
]
ACTION_IDS = [action_id for action_id, _label, _handler in ACTIONS]
ACTION_HANDLERS = {action_id: handler for action_id, _label, handler in ACTIONS}


def list_actions() -> None:
    for action_id, label, _handler in ACTIONS:
        print(f"{action_id:<26} {label}")


def run_menu(session: Session) -> None:
    while True:
        print("")
        for idx, (action_id, label, _handler) in enumerate(ACTIONS, start=1):
            print(f"{idx:>2}) {action_id:<26} {label}")
        print(" q) quit")
        answer = session.ask(f"Select action [1-{len(ACTIONS)}, q]: ")
        if answer is None:
            return
        choice = answer.strip().lower()
        if choice in {"q", "quit", ""}:
            return
        if choice.isdigit() and 1 <= int(choice) <= len(ACTIONS):
            action_id = ACTIONS[int(choice) - 1][0]
        elif choice in ACTION_HANDLERS:
            action_id = choice
        else:
            print(f"Unknown selection: {answer.strip()}")
            continue
        ACTION_HANDLERS[action_id](session)


def select_project_root(config: RunConfig, ask: Ask) -> Path:
    if config.root:
        root = Path(config.root).expanduser().resolve()
        if not root.is_dir():
            raise RootNotFound(f"project root is not a directory: {root}")
        return root
    if config.ci:
        raise RootNotFound("--root (or CONTEXT_ROOT) is required in CI mode")

    guess = discover_project_root(Path.cwd()) or Path.cwd().resolve()
    answer = ask(f"Use project root {guess}? [Y/n]: ")
    if answer is None:
        raise RootNotFound("no project root confirmed")
    if answer.strip().lower() in {"", "y", "yes"}:
        return guess
    entered = ask("Project root: ")
    if not entered or not entered.strip():
        raise RootNotFound("no project root given")
    root = Path(entered.strip()).expanduser().resolve()
    if not root.is_dir():
        raise RootNotFound(f"project root is not a directory: {root}")
    return root


def build_session(config: RunConfig, project_root: Path, policy: Policy, report: Report, ask: Ask) -> Session:
    registry = build_default_registry()
    authorization = config.write_authorization()
    writer = AtomicWriter(authorization, project_root / BACKUP_REL_DIR) if authorization is not None else None
    dispatcher = Dispatcher(
        policy=policy,
        registry=registry,
        project_root=project_root,
        gate=ConfirmationGate(config, ask=ask),
        writer=writer,
    )
    return Session(
        config=config,
        project_root=project_root,
        policy=policy,
        registry=registry,
        dispatcher=dispatcher,
        report=report,
        ask=ask,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=TOOL_NAME, description="Token Headroom: context budget analysis and cleanup")
    parser.add_argument("-n", "--dry-run", action="store_true", help="Preview only; no writes, backups or log file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print info-level diagnostics to stderr.")
    parser.add_argument(
        "-l",
        "--log",
        choices=list(LOG_MODES),
        default="off",
        help="Log file mode: off (default), on, or critical (critical changes and errors only).",
    )
    parser.add_argument("-a", "--action", choices=ACTION_IDS, help="Run one action non-interactively.")
    parser.add_argument("--list-actions", action="store_true", help="List action ids and exit.")
    parser.add_argument("-f", "--force", action="store_true", help="Approve normal changes without prompting.")
    parser.add_argument("--yes", action="store_true", help="Answer yes to the first confirmation prompt.")
    parser.add_argument(
        "--allow-critical",
        action="store_true",
        help="Approve the second confirmation for critical changes (required for critical changes in --ci).",
    )
    parser.add_argument(
        "--budget",
        type=int,
        default=DEFAULT_BUDGET,
        help=f"Context token budget (default: {DEFAULT_BUDGET}).",
    )
    parser.add_argument("--root", help="Project root (defaults to CONTEXT_ROOT or an upward marker search).")
    parser.add_argument(
        "--policy",
        help="Policy file (defaults to TOKEN_HEADROOM_POLICY, .claude/context_policy.json, then the packaged policy).",
    )
    parser.add_argument("--suggestions", help="Suggestion feed JSON consumed by apply.ignores.")
    parser.add_argument("--ci", action="store_true", help="Non-interactive mode; never prompts.")
    parser.add_argument("--json-report", help="Write a JSON run report to this path.")
    parser.add_argument("-V", "--version", action="version", version=f"{TOOL_NAME} {TOOL_VERSION}")
    return parser


def _finish(config: RunConfig, report: Report, project_root: Path | None) -> int:
    if config.json_report:
        base = project_root or Path.cwd()
        try:
            out_path = report.write(config.json_report, base)
        except OSError as exc:
            print(f"unable to write JSON report: {exc}", file=sys.stderr)
            report.record_runtime_error(f"unable to write JSON report: {exc}")
        else:
            logger.info("Wrote report %s", out_path)
    print(report.summary_line())
    return report.exit_code


def main(argv: Sequence[str] | None = None, ask: Ask | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.list_actions:
        list_actions()
        return 0
    try:
        config = RunConfig.from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    ask = ask or read_answer
    configure_logging(log_mode="off", verbose=config.verbose)
    report = Report(dry_run=config.dry_run)
    project_root: Path | None = None

    try:
        project_root = select_project_root(config, ask)
        report.project_dir = project_root

        policy_path = resolve_policy_path(config.policy_file, project_root)
        try:
            policy = load_policy(policy_path)
        except PolicyInvalid as exc:
            print(f"POLICY INVALID: {exc}", file=sys.stderr)
            logger.error("Policy invalid: %s", exc)
            report.record_policy_invalid(str(exc))
            return _finish(config, report, project_root)

        log_path = configure_logging(
            log_mode=config.effective_log_mode,
            verbose=config.verbose,
            project_root=project_root,
        )
        logger.info(
            "Run started (root=%s, policy=%s, dry_run=%s, log=%s)",
            project_root,
            policy.source,
            config.dry_run,
            log_path,
        )
        session = build_session(config, project_root, policy, report, ask)

        if config.action_id:
            ACTION_HANDLERS[config.action_id](session)
        elif config.ci:
            raise HeadroomError("--action is required in CI mode")
        else:
            run_menu(session)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        logger.error("Interrupted by operator")
        report.record_runtime_error("interrupted")
    except (HeadroomError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        logger.error("%s", exc)
        report.record_runtime_error(str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected failure")
        report.record_runtime_error(f"unexpected error: {exc}")

    return _finish(config, report, project_root)


if __name__ == "__main__":
    raise SystemExit(main())

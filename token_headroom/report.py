from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from token_headroom.dispatch import ERROR, REJECTED, MutationResult
from token_headroom.writer import atomic_write_text, utc_now


TOOL_NAME = "token-headroom"
TOOL_VERSION = "1.2.0"

EXIT_OK = 0
EXIT_FINDINGS = 8
EXIT_POLICY_INVALID = 16
EXIT_RUNTIME_ERROR = 32


@dataclass(frozen=True)
class Finding:
    id: int
    severity: str
    category: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
        }
        if self.details:
            out["details"] = self.details
        return out


class Report:
    """Findings and mutation results for one run, plus the exit code policy.

    Exit classes are mutually exclusive and evaluated as
    runtime error > policy invalid > findings present > ok.
    """

    def __init__(self, *, dry_run: bool = False) -> None:
        self.run_at = utc_now()
        self.dry_run = dry_run
        self.project_dir: Path | None = None
        self.findings: list[Finding] = []
        self.mutations: list[MutationResult] = []
        self.errors: list[str] = []
        self.policy_error: str | None = None

    def add_finding(self, severity: str, category: str, message: str, **details: Any) -> Finding:
        finding = Finding(
            id=len(self.findings) + 1,
            severity=severity,
            category=category,
            message=message,
            details=details,
        )
        self.findings.append(finding)
        return finding

    def add_mutation(self, result: MutationResult) -> None:
        self.mutations.append(result)
        if result.status == REJECTED:
            self.add_finding("warn", "policy", result.message, verb=result.verb, target=result.target)
        elif result.status == ERROR:
            self.errors.append(f"{result.verb} on {result.target}: {result.message}")
        rejected = result.details.get("rejected") if result.details else None
        if rejected:
            self.add_finding(
                "warn",
                "suggestion",
                f"{len(rejected)} candidate pattern(s) rejected by validation",
                verb=result.verb,
                rejected=rejected,
            )

    def record_runtime_error(self, message: str) -> None:
        self.errors.append(message)

    def record_policy_invalid(self, message: str) -> None:
        self.policy_error = message

    @property
    def exit_code(self) -> int:
        if self.errors:
            return EXIT_RUNTIME_ERROR
        if self.policy_error is not None:
            return EXIT_POLICY_INVALID
        if self.findings:
            return EXIT_FINDINGS
        return EXIT_OK

    @property
    def status(self) -> str:
        return {
            EXIT_OK: "ok",
            EXIT_FINDINGS: "findings",
            EXIT_POLICY_INVALID: "policy_invalid",
            EXIT_RUNTIME_ERROR: "error",
        }[self.exit_code]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": TOOL_NAME,
            "version": TOOL_VERSION,
            "run_at": self.run_at,
            "project_dir": str(self.project_dir) if self.project_dir else None,
            "dry_run": self.dry_run,
            "status": self.status,
            "exit_code": self.exit_code,
            "policy_error": self.policy_error,
            "findings": [f.to_dict() for f in self.findings],
            "mutations": [m.to_dict() for m in self.mutations],
            "errors": list(self.errors),
        }

    def write(self, out_file: str, base_dir: Path) -> Path:
        out_path = Path(out_file).expanduser()
        if not out_path.is_absolute():
            out_path = base_dir / out_path
        atomic_write_text(out_path, json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n")
        return out_path

    def summary_line(self) -> str:
        applied = sum(1 for m in self.mutations if m.status == "applied")
        return (
            f"status: {self.status} exit_code={self.exit_code} "
            f"findings={len(self.findings)} mutations={len(self.mutations)} "
            f"applied={applied} errors={len(self.errors)}"
        )

"""
Token-cost analysis of a project and the suggestion feed derived from it.

Nothing here writes to the project. Suggestions are candidate arguments for
verbs and go through the same policy/confirmation/backup pipeline as any
other input.
"""

from __future__ import annotations

import json
import os
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

import jsonschema

from token_headroom.errors import ValidationError
from token_headroom.policy import normalize_rel_path
from token_headroom.targets import IGNORE_TARGET, SETTINGS_TARGET


CHARS_PER_TOKEN = 4
HEAVY_PATH_TOKENS = 1000
LARGE_DOC_TOKENS = 500
LARGE_COMMAND_TOKENS = 500
MAX_UNIGNORED_PATHS = 100
MAX_LARGE_DOCS = 20
MAX_SUGGESTIONS = 20
SKIP_DIRS = {"node_modules", ".next", "dist", "build", "__pycache__"}
DOC_MARKERS = ("readme", "doc", "wiki", "report", ".md")
COMMANDS_REL_DIR = ".claude/commands"

SUGGESTION_FEED_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["candidates"],
    "properties": {
        "version": {"type": "string"},
        "candidates": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["pattern"],
                "properties": {
                    "pattern": {"type": "string"},
                    "token_cost": {"type": "integer", "minimum": 0},
                },
            },
        },
    },
}


def estimate_tokens(path: Path) -> int:
    try:
        return path.stat().st_size // CHARS_PER_TOKEN
    except OSError:
        return 0


def load_ignore_rules(project_dir: Path) -> list[tuple[str, bool]]:
    """
    Load ignore-file patterns.
    Returns a list of (pattern, is_negated) with order preserved.
    """
    path = project_dir / IGNORE_TARGET
    if not path.exists():
        return []

    rules: list[tuple[str, bool]] = []
    for raw in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        is_negated = line.startswith("!")
        pattern = line[1:] if is_negated else line
        pattern = normalize_rel_path(pattern)
        if not pattern:
            continue
        if pattern.endswith("/"):
            pattern = f"{pattern}**"
        rules.append((pattern, is_negated))
    return rules


def matches_ignore(rel_path: str, rules: list[tuple[str, bool]]) -> bool:
    if not rules:
        return False
    path = normalize_rel_path(rel_path)
    ignored = False
    for pattern, is_negated in rules:
        # Unanchored patterns ("dist/**", "*.log") also match below subdirectories.
        if fnmatch(path, pattern) or ("/" not in pattern.rstrip("*").rstrip("/") and fnmatch(path, f"*/{pattern}")):
            ignored = not is_negated
    return ignored


def _load_settings(project_dir: Path) -> dict[str, Any]:
    path = project_dir / SETTINGS_TARGET
    if not path.exists():
        return {}
    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return obj if isinstance(obj, dict) else {}


def _walk_unignored(project_dir: Path, rules: list[tuple[str, bool]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for dirpath, dirnames, filenames in os.walk(project_dir):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(".") and d not in SKIP_DIRS)
        for fname in sorted(filenames):
            if fname.startswith("."):
                continue
            fpath = Path(dirpath) / fname
            rel = fpath.relative_to(project_dir).as_posix()
            if matches_ignore(rel, rules):
                continue
            tokens = estimate_tokens(fpath)
            if tokens > 0:
                out.append({"path": rel, "token_cost": tokens})
    out.sort(key=lambda x: (-x["token_cost"], x["path"]))
    return out


def _large_commands(project_dir: Path) -> list[dict[str, Any]]:
    root = project_dir / COMMANDS_REL_DIR
    if not root.is_dir():
        return []
    out: list[dict[str, Any]] = []
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        tokens = estimate_tokens(p)
        if tokens > LARGE_COMMAND_TOKENS:
            out.append({"path": p.relative_to(project_dir).as_posix(), "token_cost": tokens})
    out.sort(key=lambda x: -x["token_cost"])
    return out


def build_suggestions(unignored: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Group heavy paths into ignore-pattern candidates (top-level dir or file)."""

    costs: dict[str, int] = {}
    for item in unignored:
        if item["token_cost"] < HEAVY_PATH_TOKENS:
            continue
        parts = item["path"].split("/")
        pattern = f"{parts[0]}/" if len(parts) > 1 else parts[0]
        costs[pattern] = costs.get(pattern, 0) + int(item["token_cost"])
    ranked = sorted(costs.items(), key=lambda kv: (-kv[1], kv[0]))
    return [{"pattern": p, "token_cost": c} for p, c in ranked[:MAX_SUGGESTIONS]]


def run_analysis(project_dir: Path, budget: int) -> dict[str, Any]:
    rules = load_ignore_rules(project_dir)
    settings = _load_settings(project_dir)
    unignored = _walk_unignored(project_dir, rules)
    total = sum(int(item["token_cost"]) for item in unignored)
    context = settings.get("context")
    auto_include = context.get("autoIncludePatterns") or [] if isinstance(context, dict) else []
    large_docs = [
        p for p in unignored
        if any(marker in p["path"].lower() for marker in DOC_MARKERS) and p["token_cost"] > LARGE_DOC_TOKENS
    ]

    return {
        "root": str(project_dir),
        "targets": [IGNORE_TARGET, SETTINGS_TARGET],
        "budget": budget,
        "total_estimated_tokens": total,
        "headroom": budget - total,
        "analysis_data": {
            "unignored_paths": unignored[:MAX_UNIGNORED_PATHS],
            "ignore_pattern_count": len(rules),
        },
        "autoInclude": auto_include,
        "largeCommands": _large_commands(project_dir),
        "largeDocs": large_docs[:MAX_LARGE_DOCS],
        "suggestions": {"version": "v0", "candidates": build_suggestions(unignored)},
    }


def heavy_paths(analysis: dict[str, Any], threshold: int = HEAVY_PATH_TOKENS) -> list[dict[str, Any]]:
    paths = (analysis.get("analysis_data") or {}).get("unignored_paths") or []
    return [p for p in paths if int(p.get("token_cost", 0)) >= threshold]


def load_suggestion_feed(path: Path) -> list[str]:
    """Read a suggestion feed and return its candidate patterns, highest cost first."""

    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"suggestion feed not found: {path}") from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"unreadable suggestion feed {path}: {exc}") from exc
    try:
        jsonschema.validate(instance=obj, schema=SUGGESTION_FEED_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise ValidationError(f"invalid suggestion feed {path}: {exc.message}") from exc

    candidates = sorted(obj["candidates"], key=lambda c: -int(c.get("token_cost", 0)))
    return [c["pattern"] for c in candidates]

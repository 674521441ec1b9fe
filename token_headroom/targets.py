from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from token_headroom.errors import TargetEscape
from token_headroom.policy import normalize_rel_path


IGNORE_TARGET = ".claudeignore"
SETTINGS_TARGET = ".claude/settings.json"
TARGET_ALIASES = {
    "ignore": IGNORE_TARGET,
    "claudeignore": IGNORE_TARGET,
    "settings": SETTINGS_TARGET,
}
PROJECT_MARKERS = (".git", ".claude", ".claudeignore", "pyproject.toml", "package.json")


@dataclass(frozen=True)
class Target:
    logical_name: str
    rel_path: str
    absolute_path: Path
    project_root: Path
    exists: bool


def canonical_target_name(name: str) -> str:
    stripped = name.strip()
    return TARGET_ALIASES.get(stripped.lower(), normalize_rel_path(stripped))


def discover_project_root(start: Path) -> Path | None:
    current = start.resolve()
    for candidate in (current, *current.parents):
        if any((candidate / marker).exists() for marker in PROJECT_MARKERS):
            return candidate
    return None


def resolve_target(logical_name: str, project_root: Path) -> Target:
    """Map a logical target name to a file inside project_root.

    Fails closed with TargetEscape for absolute names and for anything that
    resolves (including through symlinks) outside the root.
    """

    rel = canonical_target_name(logical_name)
    if not rel or Path(logical_name.strip()).is_absolute():
        raise TargetEscape(f"target must be a project-relative path: {logical_name!r}")

    root = project_root.resolve()
    candidate = (root / rel).resolve()
    try:
        resolved_rel = candidate.relative_to(root)
    except ValueError as exc:
        raise TargetEscape(f"target escapes project root: {logical_name}") from exc
    if not resolved_rel.parts:
        raise TargetEscape(f"target resolves to the project root itself: {logical_name}")

    return Target(
        logical_name=rel,
        rel_path=resolved_rel.as_posix(),
        absolute_path=candidate,
        project_root=root,
        exists=candidate.is_file(),
    )

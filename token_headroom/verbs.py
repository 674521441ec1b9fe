from __future__ import annotations

import copy
import glob
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Protocol, Sequence

from token_headroom.errors import DuplicateVerb, TargetMissing, UnknownVerb, ValidationError
from token_headroom.preview import render_json_document, unified_diff
from token_headroom.targets import Target


RECOMMENDED_IGNORE_PATTERNS = [
    "node_modules/",
    ".next/",
    "dist/",
    "build/",
    "out/",
    "_build/",
    "coverage/",
    "logs/",
    "public/export/",
    "docs/archive/",
    "docs/kb/",
]
DEFAULT_DENY_RULES = [
    "Read(./node_modules/**)",
    "Read(./.next/**)",
    "Read(./logs/**)",
    "Read(./public/export/**)",
    "Read(./docs/archive/**)",
    "Read(./_build/**)",
]
AUTO_INCLUDE_MATCH_LIMIT = 50
MAX_NARROWED_SUGGESTIONS = 8


class VerbName(str, Enum):
    APPEND_RECOMMENDED_PATTERNS = "append_recommended_patterns"
    DEDUPLICATE_PATTERNS = "deduplicate_patterns"
    PRUNE_ALWAYS_INCLUDE = "prune_alwaysInclude"
    ADD_PERMISSIONS_DENY = "add_permissions_deny"
    TIGHTEN_AUTO_INCLUDE = "tighten_auto_include"


class Risk(str, Enum):
    NORMAL = "normal"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PendingChange:
    verb: str
    risk: Risk
    target: Target
    description: str
    old_text: str
    new_text: str
    diff: str
    details: dict[str, Any] = field(default_factory=dict)
    writes: bool = True

    @property
    def changed(self) -> bool:
        return self.writes and self.old_text != self.new_text


class Verb(Protocol):
    name: str
    risk: Risk
    description: str

    def preview(self, target: Target, args: Sequence[str]) -> PendingChange:
        ...

    def apply(self, target: Target, args: Sequence[str]) -> str:
        ...


def read_target_text(target: Target) -> str:
    try:
        data = target.absolute_path.read_bytes()
    except FileNotFoundError as exc:
        raise TargetMissing(f"{target.rel_path} not found") from exc
    except OSError as exc:
        raise ValidationError(f"unable to read {target.rel_path}: {exc}") from exc
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError(f"{target.rel_path} is not valid UTF-8: {exc}") from exc


class TransformVerb:
    """Base for verbs expressed as a pure text transform.

    preview() and apply() both run transform() on the current file content;
    neither writes. apply() only computes the content the writer will store.
    """

    name = ""
    risk = Risk.NORMAL
    description = ""
    writes = True

    def transform(self, target: Target, text: str, args: Sequence[str]) -> tuple[str, dict[str, Any]]:
        raise NotImplementedError

    def preview(self, target: Target, args: Sequence[str]) -> PendingChange:
        old = read_target_text(target)
        new, details = self.transform(target, old, tuple(args))
        if not self.writes:
            new = old
        return PendingChange(
            verb=self.name,
            risk=self.risk,
            target=target,
            description=self.description,
            old_text=old,
            new_text=new,
            diff=unified_diff(target.rel_path, old, new),
            details=details,
            writes=self.writes,
        )

    def apply(self, target: Target, args: Sequence[str]) -> str:
        old = read_target_text(target)
        if not self.writes:
            return old
        new, _details = self.transform(target, old, tuple(args))
        return new


def _pattern_lines(text: str) -> list[str]:
    out: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if line and not line.startswith("#"):
            out.append(line)
    return out


def ignore_candidate_problem(candidate: Any) -> str | None:
    if not isinstance(candidate, str):
        return "not a string"
    stripped = candidate.strip()
    if not stripped:
        return "empty pattern"
    if any(ch in candidate for ch in ("\n", "\r", "\x00")):
        return "multi-line pattern"
    if stripped.startswith("#"):
        return "comment, not a pattern"
    if stripped.startswith("!"):
        return "negated pattern would re-include paths"
    if ".." in stripped.split("/"):
        return "parent directory traversal"
    return None


class AppendRecommendedPatterns(TransformVerb):
    name = VerbName.APPEND_RECOMMENDED_PATTERNS.value
    risk = Risk.NORMAL
    description = "Append recommended ignore patterns that are not present yet"

    def transform(self, target: Target, text: str, args: Sequence[str]) -> tuple[str, dict[str, Any]]:
        candidates = list(args) or list(RECOMMENDED_IGNORE_PATTERNS)
        rejected: list[dict[str, str]] = []
        present = set(_pattern_lines(text))
        to_add: list[str] = []
        for cand in candidates:
            problem = ignore_candidate_problem(cand)
            if problem is not None:
                rejected.append({"pattern": str(cand), "reason": problem})
                continue
            pattern = cand.strip()
            if pattern in present or pattern in to_add:
                continue
            to_add.append(pattern)

        details: dict[str, Any] = {"add": to_add, "count": len(to_add)}
        if rejected:
            details["rejected"] = rejected
        if not to_add:
            return text, details

        new = text
        if new and not new.endswith("\n"):
            new += "\n"
        new += "\n".join(to_add) + "\n"
        return new, details


class DeduplicatePatterns(TransformVerb):
    name = VerbName.DEDUPLICATE_PATTERNS.value
    risk = Risk.NORMAL
    description = "Remove duplicate ignore patterns while preserving comments"

    def transform(self, target: Target, text: str, args: Sequence[str]) -> tuple[str, dict[str, Any]]:
        seen: set[str] = set()
        removed: list[str] = []
        kept: list[str] = []
        for line in text.splitlines(keepends=True):
            key = line.strip()
            if key and not key.startswith("#"):
                if key in seen:
                    removed.append(key)
                    continue
                seen.add(key)
            kept.append(line)
        return "".join(kept), {"removed": removed, "count": len(removed)}


def parse_json_object(target: Target, text: str) -> dict[str, Any]:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid JSON in {target.rel_path}: {exc}") from exc
    if not isinstance(doc, dict):
        raise ValidationError(f"{target.rel_path} must contain a JSON object")
    return doc


def _object_section(doc: dict[str, Any], key: str, target: Target) -> dict[str, Any] | None:
    section = doc.get(key)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ValidationError(f"{target.rel_path}: '{key}' must be an object")
    return section


def _list_field(section: dict[str, Any], key: str, dotted: str, target: Target) -> list[Any] | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError(f"{target.rel_path}: '{dotted}' must be an array")
    return value


class JsonDocumentVerb(TransformVerb):
    """Verb over a JSON settings document.

    The document is transformed on a deep copy. When the result is
    semantically equal to the input, the original text is returned untouched
    so formatting differences never show up as a change.
    """

    risk = Risk.CRITICAL

    def transform_document(
        self, target: Target, doc: dict[str, Any], args: Sequence[str]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        raise NotImplementedError

    def transform(self, target: Target, text: str, args: Sequence[str]) -> tuple[str, dict[str, Any]]:
        doc = parse_json_object(target, text)
        updated, details = self.transform_document(target, copy.deepcopy(doc), args)
        if updated == doc:
            return text, details
        return render_json_document(updated), details


def _has_glob_magic(entry: str) -> bool:
    return any(ch in entry for ch in "*?[")


def include_entry_exists(project_root: Path, entry: str) -> bool:
    if _has_glob_magic(entry):
        return bool(glob.glob(entry, root_dir=str(project_root), recursive=True))
    p = Path(entry).expanduser()
    if not p.is_absolute():
        p = project_root / p
    return p.exists()


class PruneAlwaysInclude(JsonDocumentVerb):
    name = VerbName.PRUNE_ALWAYS_INCLUDE.value
    description = "Remove non-existent paths from context.alwaysInclude"

    def transform_document(
        self, target: Target, doc: dict[str, Any], args: Sequence[str]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        ctx = _object_section(doc, "context", target)
        entries = _list_field(ctx, "alwaysInclude", "context.alwaysInclude", target) if ctx is not None else None
        if not entries:
            return doc, {"missing": [], "count": 0}

        missing = [e for e in entries if isinstance(e, str) and not include_entry_exists(target.project_root, e)]
        invalid = [e for e in entries if not isinstance(e, str)]
        details: dict[str, Any] = {"missing": missing, "count": len(missing)}
        if invalid:
            details["invalid"] = invalid
        if ctx is not None and (missing or invalid):
            ctx["alwaysInclude"] = [
                e for e in entries if isinstance(e, str) and include_entry_exists(target.project_root, e)
            ]
        return doc, details


class AddPermissionsDeny(JsonDocumentVerb):
    name = VerbName.ADD_PERMISSIONS_DENY.value
    description = "Add permissions.deny entries to block heavy paths"

    def transform_document(
        self, target: Target, doc: dict[str, Any], args: Sequence[str]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        rules = list(args) or list(DEFAULT_DENY_RULES)
        for rule in rules:
            if not isinstance(rule, str) or not rule.strip() or any(ch in rule for ch in ("\n", "\r")):
                raise ValidationError(f"invalid permissions.deny rule: {rule!r}")

        perms = _object_section(doc, "permissions", target)
        deny = (_list_field(perms, "deny", "permissions.deny", target) if perms is not None else None) or []
        add: list[str] = []
        for rule in rules:
            if rule not in deny and rule not in add:
                add.append(rule)
        if add:
            if perms is None:
                perms = {}
                doc["permissions"] = perms
            perms["deny"] = [*deny, *add]
        return doc, {"add": add}


class TightenAutoInclude(JsonDocumentVerb):
    name = VerbName.TIGHTEN_AUTO_INCLUDE.value
    description = "Proposals to narrow high-match autoIncludePatterns (preview only)"
    writes = False

    def transform_document(
        self, target: Target, doc: dict[str, Any], args: Sequence[str]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        ctx = _object_section(doc, "context", target)
        patterns = (
            _list_field(ctx, "autoIncludePatterns", "context.autoIncludePatterns", target) if ctx is not None else None
        ) or []
        proposals: list[dict[str, Any]] = []
        for pat in patterns:
            if not isinstance(pat, str) or not pat.strip():
                continue
            matches = glob.glob(pat, root_dir=str(target.project_root), recursive=True)
            if len(matches) <= AUTO_INCLUDE_MATCH_LIMIT:
                continue
            head = pat.split("/**", 1)[0].rstrip("/")
            head_parts = head.split("/")
            subs: set[str] = set()
            for m in matches:
                parts = Path(m).as_posix().split("/")
                if len(parts) > len(head_parts) + 1 and parts[: len(head_parts)] == head_parts:
                    subs.add(parts[len(head_parts)])
            proposals.append(
                {
                    "pattern": pat,
                    "count": len(matches),
                    "suggest": [f"{head}/{s}/**/*" for s in sorted(subs)[:MAX_NARROWED_SUGGESTIONS]],
                }
            )
        return doc, {"proposals": proposals}


class VerbRegistry:
    """Ordered table of verbs; the only extension point of the engine."""

    def __init__(self) -> None:
        self._verbs: dict[str, Verb] = {}

    def register(self, verb: Verb) -> None:
        if not verb.name:
            raise ValueError("verb must have a name")
        if verb.name in self._verbs:
            raise DuplicateVerb(f"verb already registered: {verb.name}")
        self._verbs[verb.name] = verb

    def get(self, name: str) -> Verb:
        try:
            return self._verbs[name]
        except KeyError as exc:
            raise UnknownVerb(f"verb not registered: {name}") from exc

    def names(self) -> list[str]:
        return list(self._verbs)

    def missing(self) -> list[str]:
        return [v.value for v in VerbName if v.value not in self._verbs]

    def __contains__(self, name: object) -> bool:
        return name in self._verbs

    def __iter__(self) -> Iterator[Verb]:
        return iter(self._verbs.values())

    def __len__(self) -> int:
        return len(self._verbs)


def build_default_registry() -> VerbRegistry:
    registry = VerbRegistry()
    for verb in (
        AppendRecommendedPatterns(),
        DeduplicatePatterns(),
        PruneAlwaysInclude(),
        AddPermissionsDeny(),
        TightenAutoInclude(),
    ):
        registry.register(verb)
    missing = registry.missing()
    if missing:
        raise UnknownVerb(f"verbs declared but not registered: {', '.join(missing)}")
    return registry

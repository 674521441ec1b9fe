from __future__ import annotations

import json
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import jsonschema

from token_headroom.errors import PolicyInvalid


DEFAULT_POLICY_FILE = "context_policy.json"
PROJECT_POLICY_REL_PATH = ".claude/context_policy.json"
SUPPORTED_SCHEMA_VERSIONS = {1}

POLICY_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["schemaVersion", "immutable", "editable"],
    "properties": {
        "schemaVersion": {"type": "integer"},
        "immutable": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
        },
        "editable": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {"type": "string", "minLength": 1},
            },
        },
        "exceptions": {
            "type": "array",
            "items": {"type": "string", "pattern": "^!.+"},
        },
    },
}


def normalize_rel_path(path: str) -> str:
    out = path.replace("\\", "/")
    while out.startswith("./"):
        out = out[2:]
    return out.lstrip("/")


def _normalize_pattern(pattern: str) -> str:
    pattern = normalize_rel_path(pattern.strip())
    if pattern.endswith("/"):
        pattern = f"{pattern}**"
    return pattern


def matches_any(rel_path: str, patterns: tuple[str, ...]) -> str | None:
    path = normalize_rel_path(rel_path)
    for pattern in patterns:
        if fnmatch(path, pattern):
            return pattern
    return None


@dataclass(frozen=True)
class Policy:
    schema_version: int
    immutable: tuple[str, ...]
    editable: Mapping[str, frozenset[str]]
    exceptions: tuple[str, ...] = ()
    source: Path | None = field(default=None, compare=False)

    def immutable_match(self, rel_path: str) -> str | None:
        """Return the immutable pattern that protects rel_path, if any.

        An exception pattern overrides the verdict for the matching path only.
        """

        hit = matches_any(rel_path, self.immutable)
        if hit is None:
            return None
        if matches_any(rel_path, self.exceptions) is not None:
            return None
        return hit

    def is_immutable(self, rel_path: str) -> bool:
        return self.immutable_match(rel_path) is not None

    def verbs_allowed_for(self, target_name: str) -> frozenset[str]:
        return self.editable.get(normalize_rel_path(target_name), frozenset())


def parse_policy(obj: Any, source: Path | None = None) -> Policy:
    try:
        jsonschema.validate(instance=obj, schema=POLICY_SCHEMA)
    except jsonschema.ValidationError as exc:
        where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise PolicyInvalid(f"policy schema violation at {where}: {exc.message}") from exc

    version = obj["schemaVersion"]
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        supported = ", ".join(str(v) for v in sorted(SUPPORTED_SCHEMA_VERSIONS))
        raise PolicyInvalid(f"unsupported policy schemaVersion: {version!r}; supported: {supported}")

    editable = {
        normalize_rel_path(target): frozenset(verbs)
        for target, verbs in obj["editable"].items()
    }
    return Policy(
        schema_version=version,
        immutable=tuple(_normalize_pattern(p) for p in obj["immutable"]),
        editable=MappingProxyType(editable),
        exceptions=tuple(_normalize_pattern(p[1:]) for p in obj.get("exceptions", [])),
        source=source,
    )


def load_policy(path: Path) -> Policy:
    if not path.exists():
        raise PolicyInvalid(f"policy file not found: {path}")
    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise PolicyInvalid(f"unable to read policy file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PolicyInvalid(f"invalid JSON in policy file {path}: {exc}") from exc
    return parse_policy(obj, source=path)


def packaged_policy_path() -> Path:
    return Path(__file__).resolve().parent / DEFAULT_POLICY_FILE


def resolve_policy_path(raw_policy: str | None, project_root: Path) -> Path:
    if raw_policy:
        p = Path(raw_policy).expanduser()
        return p.resolve() if p.is_absolute() else (project_root / p).resolve()
    project_policy = project_root / PROJECT_POLICY_REL_PATH
    if project_policy.exists():
        return project_policy
    return packaged_policy_path()

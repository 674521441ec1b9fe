from __future__ import annotations

import difflib
import json
from typing import Any


def unified_diff(rel_path: str, old_text: str, new_text: str) -> str:
    """Render a git-style unified diff; empty string when nothing changes."""

    rp = (rel_path or "").replace("\\", "/").lstrip("/")
    ud = list(
        difflib.unified_diff(
            old_text.splitlines(),
            new_text.splitlines(),
            fromfile="a/" + rp,
            tofile="b/" + rp,
            lineterm="",
        )
    )
    if not ud:
        if old_text != new_text:
            # Only the trailing newline differs.
            return f"--- a/{rp}\n+++ b/{rp}\n\\ trailing newline changed\n"
        return ""
    return "\n".join(ud).rstrip() + "\n"


def diff_stats(diff_text: str) -> dict[str, int]:
    added = removed = 0
    for line in diff_text.splitlines():
        if line.startswith(("+++", "---")):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return {"added": added, "removed": removed}


def render_json_document(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False) + "\n"

"""
Recovery of dependency edges lost from feature records.

Evidence comes from the numbered record backups and from dependency lists
written in the plan text. Restoration is additive only: a declared
dependency is never removed here.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from ..store import DEFAULT_MAX_BACKUPS, FeatureRecord

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"dependencies?", re.IGNORECASE)
_BRACKET_RE = re.compile(r"dependencies?\s*:\s*\[([^\]]+)\]", re.IGNORECASE)
_INLINE_RE = re.compile(r"dependencies?\s*:\s*(.+)$", re.IGNORECASE)
_BARE_LABEL_RE = re.compile(r"^dependencies?\s*:?$", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[-*+]\s*([A-Za-z0-9:_-]+)")


@dataclass
class DependencyRestore:
    candidates: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


def normalize_dependencies(values: Iterable[str]) -> list[str]:
    """Trim, drop empties and de-duplicate, keeping first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        cleaned = str(value).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def read_backup_dependencies(record_path: Path, max_backups: int = DEFAULT_MAX_BACKUPS) -> list[str]:
    collected: list[str] = []
    for i in range(1, max_backups + 1):
        backup = Path(f"{record_path}.bak{i}")
        try:
            data = json.loads(backup.read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring unreadable backup %s: %s", backup, exc)
            continue
        deps = data.get("dependencies") if isinstance(data, dict) else None
        if isinstance(deps, list):
            collected.extend(str(dep) for dep in deps)
    return normalize_dependencies(collected)


def _split_candidates(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def extract_dependencies_from_plan(text: str | None) -> list[str]:
    if not text:
        return []

    found: list[str] = []
    lines = text.splitlines()
    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        if not _LABEL_RE.search(line):
            continue

        bracket = _BRACKET_RE.search(line)
        if bracket:
            found.extend(_split_candidates(bracket.group(1)))
            continue

        inline = _INLINE_RE.search(line)
        if inline and inline.group(1):
            found.extend(_split_candidates(inline.group(1)))
            continue

        if _BARE_LABEL_RE.match(line):
            for next_raw in lines[index + 1:]:
                next_line = next_raw.strip()
                if not next_line or next_line.startswith("#"):
                    break
                bullet = _BULLET_RE.match(next_line)
                if not bullet:
                    break
                found.append(bullet.group(1))

    return normalize_dependencies(found)


def restore_candidates(
    feature: FeatureRecord,
    all_ids: Iterable[str],
    backup_deps: Iterable[str],
    plan_deps: Iterable[str],
) -> DependencyRestore:
    """Candidates from all evidence; ``missing`` are known ids not yet declared."""
    known = set(all_ids)
    current = {dep for dep in (feature.dependencies or []) if dep}
    candidates = [
        dep for dep in normalize_dependencies([*backup_deps, *plan_deps]) if dep != feature.id
    ]
    missing = [dep for dep in candidates if dep not in current and dep in known]
    return DependencyRestore(candidates=candidates, missing=missing)


def apply_restore(feature: FeatureRecord, missing: Iterable[str]) -> FeatureRecord:
    """Return a copy of ``feature`` with ``missing`` unioned into its dependencies."""
    updated = feature.copy()
    merged = normalize_dependencies([*(feature.dependencies or []), *missing])
    updated.dependencies = merged or None
    return updated

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import unquote

import yaml

from dbkeeper.core.config import get_settings


REQUIRED_FRONTMATTER_KEYS = ("name", "description")

RULE_FRONTMATTER_MISSING = "frontmatter-missing"
RULE_FRONTMATTER_INVALID = "frontmatter-invalid"
RULE_FRONTMATTER_KEYS = "frontmatter-keys"
RULE_BROKEN_LINK = "broken-link"
RULE_LINE_LENGTH = "line-too-long"
RULE_DUPLICATE_NAME = "duplicate-name"
RULE_UNTERMINATED_FENCE = "unterminated-fence"

_LINK_RE = re.compile(r"(?<!!)\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_IMAGE_RE = re.compile(r"!\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_INLINE_CODE_RE = re.compile(r"`[^`]*`")
_EXTERNAL_PREFIXES = ("http://", "https://", "mailto:", "ftp://", "tel:", "data:")


@dataclass(frozen=True)
class LintIssue:
    path: Path
    line: int
    rule: str
    message: str

    def format(self, root: Path | None = None) -> str:
        shown = self.path
        if root is not None:
            try:
                shown = self.path.relative_to(root)
            except ValueError:
                pass
        return f"{shown}:{self.line}: {self.rule}: {self.message}"


def is_skill_or_agent_file(path: Path) -> bool:
    # SKILL.md anywhere, or any Markdown file that lives under an agents/ directory.
    if path.name == "SKILL.md":
        return True
    return "agents" in path.parent.parts


def split_frontmatter(text: str) -> tuple[str | None, int]:
    """Return the raw YAML frontmatter (or None) and the line number where the body starts."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return None, 1
    for index in range(1, len(lines)):
        if lines[index].strip() in {"---", "..."}:
            return "\n".join(lines[1:index]), index + 2
    return None, 1


def _check_frontmatter(path: Path, text: str, required: bool) -> tuple[list[LintIssue], dict[str, Any] | None]:
    raw, _ = split_frontmatter(text)
    if raw is None:
        if required:
            return [LintIssue(path, 1, RULE_FRONTMATTER_MISSING, "YAML frontmatter block is missing")], None
        return [], None
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 2 if mark is not None else 1
        return [LintIssue(path, line, RULE_FRONTMATTER_INVALID, f"frontmatter is not valid YAML: {exc}")], None
    if not isinstance(data, dict):
        return [LintIssue(path, 1, RULE_FRONTMATTER_INVALID, "frontmatter must be a mapping")], None
    if not required:
        return [], data
    missing = [key for key in REQUIRED_FRONTMATTER_KEYS if not data.get(key)]
    if missing:
        return [LintIssue(path, 1, RULE_FRONTMATTER_KEYS, f"frontmatter lacks {', '.join(missing)}")], data
    return [], data


def _resolve_link(path: Path, root: Path, href: str) -> Path | None:
    if href.startswith(_EXTERNAL_PREFIXES) or href.startswith("#") or "://" in href:
        return None
    target = unquote(href.split("#", 1)[0].split("?", 1)[0])
    if not target:
        return None
    if target.startswith("/"):
        return root / target.lstrip("/")
    return path.parent / target


def _scan_body(path: Path, root: Path, text: str, max_line_length: int) -> list[LintIssue]:
    issues: list[LintIssue] = []
    fence: str | None = None
    fence_line = 0
    for number, line in enumerate(text.splitlines(), start=1):
        match = _FENCE_RE.match(line)
        if fence is None and match is not None:
            fence = match.group(1)
            fence_line = number
            continue
        if fence is not None:
            # A closing fence uses the same character and is at least as long as the opener.
            if match is not None and match.group(1)[0] == fence[0] and len(match.group(1)) >= len(fence):
                if not line.strip()[len(match.group(1)):].strip():
                    fence = None
            continue
        if len(line) > max_line_length:
            issues.append(
                LintIssue(path, number, RULE_LINE_LENGTH, f"line is {len(line)} characters (max {max_line_length})")
            )
        prose = _INLINE_CODE_RE.sub("", line)
        for link_re in (_LINK_RE, _IMAGE_RE):
            for link in link_re.finditer(prose):
                href = link.group(1)
                resolved = _resolve_link(path, root, href)
                if resolved is not None and not resolved.exists():
                    issues.append(LintIssue(path, number, RULE_BROKEN_LINK, f"link target {href} does not exist"))
    if fence is not None:
        issues.append(LintIssue(path, fence_line, RULE_UNTERMINATED_FENCE, f"code fence {fence} is never closed"))
    return issues


def iter_markdown_files(root: Path) -> Iterable[Path]:
    for path in sorted(root.rglob("*.md")):
        if any(part.startswith(".") for part in path.relative_to(root).parts):
            continue
        if path.is_file():
            yield path


def lint_corpus(root: Path, *, max_line_length: int | None = None) -> list[LintIssue]:
    """Lint every Markdown file under ``root``.

    Skill and agent files must carry YAML frontmatter with ``name`` and
    ``description``; all files are checked for broken relative links, overlong
    lines outside fenced code, duplicate ``name`` values and unterminated
    code fences.
    """
    root = root.resolve()
    limit = max_line_length if max_line_length is not None else get_settings().doclint_max_line_length
    issues: list[LintIssue] = []
    names: dict[str, Path] = {}
    for path in iter_markdown_files(root):
        text = path.read_text(encoding="utf-8", errors="replace")
        frontmatter_issues, data = _check_frontmatter(path, text, is_skill_or_agent_file(path))
        issues.extend(frontmatter_issues)
        issues.extend(_scan_body(path, root, text, limit))
        name = data.get("name") if data else None
        if isinstance(name, str) and name:
            first = names.get(name)
            if first is None:
                names[name] = path
            else:
                issues.append(
                    LintIssue(path, 1, RULE_DUPLICATE_NAME, f"name {name!r} already used by {first.relative_to(root)}")
                )
    return issues

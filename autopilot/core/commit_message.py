"""Conventional commit message generation."""

import re
from collections import Counter
from string import Template
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

CONVENTIONAL_TYPES = (
    "feat",
    "fix",
    "docs",
    "style",
    "refactor",
    "perf",
    "test",
    "build",
    "ci",
    "chore",
    "revert",
)

DEFAULT_COMMIT_TEMPLATE = "${header}\n\n${body}\n\n${trailers}"

DEFAULT_SCOPE = "repo"

# First match wins, so specific patterns come before generic ones
DEFAULT_SCOPE_MAPPINGS: List[Tuple[str, str]] = [
    ("**/test_*.py", "test"),
    ("**/*_test.py", "test"),
    ("**/*.test.*", "test"),
    ("**/*.spec.*", "test"),
    ("**/tests/**", "test"),
    ("**/test/**", "test"),
    ("**/conftest.py", "test"),
    ("**/poetry.lock", "deps"),
    ("**/uv.lock", "deps"),
    ("**/requirements*.txt", "deps"),
    ("**/package-lock.json", "deps"),
    ("**/pnpm-lock.yaml", "deps"),
    ("**/yarn.lock", "deps"),
    ("**/pyproject.toml", "config"),
    ("**/setup.cfg", "config"),
    ("**/package.json", "config"),
    ("**/tsconfig*.json", "config"),
    ("**/.*rc", "config"),
    ("**/cli/**", "cli"),
    ("**/core/**", "core"),
    ("**/workflow/**", "workflow"),
    ("**/git/**", "git"),
    ("**/storage/**", "storage"),
    ("**/auth/**", "auth"),
    ("**/config/**", "config"),
    ("**/*.md", "docs"),
    ("**/*.rst", "docs"),
    ("**/docs/**", "docs"),
    ("**/README*", "docs"),
    ("**/CHANGELOG*", "docs"),
]

DEFAULT_SCOPE_PRIORITIES: Dict[str, int] = {
    "core": 100,
    "cli": 90,
    "mcp": 85,
    "workflow": 80,
    "git": 75,
    "storage": 70,
    "auth": 65,
    "config": 60,
    "test": 50,
    "docs": 30,
    "deps": 20,
    DEFAULT_SCOPE: 10,
}

_HEADER_RE = re.compile(
    r"^(?P<type>[a-z]+)(?:\((?P<scope>[^()\s]+)\))?(?P<breaking>!)?: (?P<description>.+)$"
)


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a ``**``-aware glob into an anchored regex."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


class ScopeDetector:
    """
    Picks a conventional-commit scope from a list of changed files.

    Each file maps to at most one scope (first matching pattern). The scope
    with the highest ``priority * file count`` wins; ``repo`` is the
    fallback when nothing matches.
    """

    def __init__(
        self,
        custom_mappings: Optional[Dict[str, str]] = None,
        custom_priorities: Optional[Dict[str, int]] = None,
    ):
        mappings = list((custom_mappings or {}).items()) + DEFAULT_SCOPE_MAPPINGS
        self._mappings = [(_glob_to_regex(glob), scope) for glob, scope in mappings]
        self.priorities = {**DEFAULT_SCOPE_PRIORITIES, **(custom_priorities or {})}

    def scope_for_file(self, path: str) -> Optional[str]:
        normalized = path.replace("\\", "/")
        for regex, scope in self._mappings:
            if regex.match(normalized):
                return scope
        return None

    def get_all_matching_scopes(self, files: Iterable[str]) -> List[str]:
        """Distinct scopes matched by ``files``, in first-seen order."""
        scopes: Dict[str, None] = {}
        for path in files:
            scope = self.scope_for_file(path)
            if scope:
                scopes.setdefault(scope, None)
        return list(scopes)

    def detect_scope(self, files: Sequence[str]) -> str:
        counts = Counter(
            scope for scope in (self.scope_for_file(f) for f in files) if scope
        )
        if not counts:
            return DEFAULT_SCOPE

        best_scope, best_score = DEFAULT_SCOPE, 0
        for scope, count in counts.items():
            score = self.priorities.get(scope, 0) * count
            if score > best_score:
                best_scope, best_score = scope, score
        return best_scope


class CommitMessageGenerator:
    """
    Renders conventional commit messages with workflow trailers.

    The template is a ``string.Template``; ``${header}``, ``${body}`` and
    ``${trailers}`` hold the rendered sections and every individual value
    (``${type}``, ``${scope}``, ``${description}``, ``${task_id}``, ...) is
    also available. Runs of blank lines left by empty sections are collapsed.
    """

    def __init__(
        self,
        template: Optional[str] = None,
        custom_scopes: Optional[Dict[str, str]] = None,
    ):
        self.template = Template(template or DEFAULT_COMMIT_TEMPLATE)
        self.scope_detector = ScopeDetector(custom_scopes)

    def generate(
        self,
        type: str,
        description: str,
        changed_files: Sequence[str] = (),
        scope: Optional[str] = None,
        body: Optional[str] = None,
        breaking: bool = False,
        task_id: Optional[str] = None,
        subtask_id: Optional[str] = None,
        phase: Optional[str] = None,
        tag: Optional[str] = None,
        tests_passing: Optional[int] = None,
        tests_failing: Optional[int] = None,
    ) -> str:
        """
        Build a commit message.

        Args:
            type: Conventional commit type (feat, fix, ...)
            description: Short summary for the header
            changed_files: Files in the commit, used to detect the scope
            scope: Explicit scope, overrides detection
            body: Free-form body text
            breaking: Mark the header with ``!``
            task_id: Task trailer
            subtask_id: Subtask trailer
            phase: Workflow phase trailer
            tag: Task tag trailer
            tests_passing: Passing test count for the Tests trailer
            tests_failing: Failing test count for the Tests trailer

        Returns:
            The rendered message

        Raises:
            ValueError: If the type is unknown or the description is empty
        """
        if type not in CONVENTIONAL_TYPES:
            raise ValueError(
                f"Unknown commit type '{type}'; expected one of {', '.join(CONVENTIONAL_TYPES)}"
            )
        description = " ".join(description.split())
        if not description:
            raise ValueError("Commit description cannot be empty")

        resolved_scope = scope or self.scope_detector.detect_scope(changed_files)
        header = f"{type}({resolved_scope}){'!' if breaking else ''}: {description}"

        trailers = []
        if task_id:
            trailers.append(f"Task: {task_id}")
        if subtask_id:
            trailers.append(f"Subtask: {subtask_id}")
        if phase:
            trailers.append(f"Phase: {phase}")
        if tag:
            trailers.append(f"Tag: {tag}")
        if tests_passing is not None or tests_failing is not None:
            trailers.append(
                f"Tests: {tests_passing or 0} passing, {tests_failing or 0} failing"
            )

        rendered = self.template.safe_substitute(
            header=header,
            body=(body or "").strip(),
            trailers="\n".join(trailers),
            type=type,
            scope=resolved_scope,
            breaking="!" if breaking else "",
            description=description,
            task_id=task_id or "",
            subtask_id=subtask_id or "",
            phase=phase or "",
            tag=tag or "",
            tests_passing=tests_passing if tests_passing is not None else "",
            tests_failing=tests_failing if tests_failing is not None else "",
        )
        return _collapse_blank_lines(rendered)


def _collapse_blank_lines(text: str) -> str:
    lines = [line.rstrip() for line in text.splitlines()]
    collapsed: List[str] = []
    for line in lines:
        if not line and (not collapsed or not collapsed[-1]):
            continue
        collapsed.append(line)
    while collapsed and not collapsed[-1]:
        collapsed.pop()
    return "\n".join(collapsed)


def parse_commit_message(message: str) -> Dict[str, Optional[str]]:
    """
    Split a conventional commit header into its parts.

    Returns:
        Dict with type, scope, breaking ("!" or None) and description;
        all None when the header does not parse
    """
    header = message.splitlines()[0] if message else ""
    match = _HEADER_RE.match(header)
    if not match:
        return {"type": None, "scope": None, "breaking": None, "description": None}
    return {
        "type": match.group("type"),
        "scope": match.group("scope"),
        "breaking": match.group("breaking"),
        "description": match.group("description"),
    }


def validate_conventional_commit(message: str) -> List[str]:
    """Check a message against the conventional commit format."""
    errors = []
    if not message or not message.strip():
        return ["Commit message cannot be empty"]

    lines = message.splitlines()
    parsed = parse_commit_message(message)
    if parsed["type"] is None:
        errors.append("Header must match 'type(scope): description'")
    elif parsed["type"] not in CONVENTIONAL_TYPES:
        errors.append(f"Unknown commit type '{parsed['type']}'")

    if len(lines) > 1 and lines[1].strip():
        errors.append("Header must be followed by a blank line")
    return errors

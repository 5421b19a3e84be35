"""
Trigger Rules
=============
Decides which pipelines a change set triggers.

CI pipeline:
    Runs on push / pull request to a watched branch and on manual dispatch,
    unless EVERY changed path matches the ignore list (docs, workflow files,
    markdown, container-only files).

Smoke pipeline:
    Runs on manual dispatch, or when ANY changed path touches the container
    build inputs (Dockerfile, docker/**, the smoke workflow file).

Pattern syntax follows workflow path filters:
    **   matches across directory separators
    *    matches within one path segment
    ?    matches one character
so ``**.md`` matches markdown at any depth and ``docs/**`` anything under docs/.
"""
import re
import subprocess
import logging
from functools import lru_cache
from typing import Iterable, Optional

from release_gate.core.settings import TriggerSettings
from release_gate.models.pipeline_run import TriggerReason

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern[i:i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def path_matches(path: str, pattern: str) -> bool:
    """True if ``path`` (repo-relative, forward slashes) matches ``pattern``."""
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return bool(_compile(pattern).match(normalized))


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(path_matches(path, p) for p in patterns)


def should_run_ci(
    changed_paths: list[str],
    trigger: TriggerReason,
    settings: TriggerSettings,
    branch: Optional[str] = None,
) -> bool:
    """Whether the verification pipeline runs for this change set."""
    if trigger == TriggerReason.MANUAL:
        return True
    if branch is not None and branch not in settings.branches:
        return False
    if not changed_paths:
        return True
    return not all(matches_any(p, settings.ci_ignore_paths) for p in changed_paths)


def should_run_smoke(
    changed_paths: list[str],
    trigger: TriggerReason,
    settings: TriggerSettings,
    branch: Optional[str] = None,
) -> bool:
    """Whether the container smoke pipeline runs for this change set."""
    if trigger == TriggerReason.MANUAL:
        return True
    # pull requests run for any base branch; pushes only for watched branches
    if trigger == TriggerReason.PUSH and branch is not None and branch not in settings.branches:
        return False
    return any(matches_any(p, settings.smoke_paths) for p in changed_paths)


def changed_paths_from_git(workspace: str, base: str, head: str = "HEAD") -> list[str]:
    """
    List paths changed between ``base`` and ``head`` using ``git diff --name-only``.

    Raises
    ------
    RuntimeError
        If git fails (unknown ref, not a repository).
    """
    try:
        proc = subprocess.run(
            ["git", "diff", "--name-only", f"{base}...{head}"],
            cwd=workspace,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        logger.error("git diff failed: %s", e.stderr)
        raise RuntimeError(f"git diff failed: {e.stderr.strip()}")
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

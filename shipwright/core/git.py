"""Thin wrapper around the git CLI, used to build a RunContext for a ref."""

from __future__ import annotations

import getpass
import subprocess
from pathlib import Path

from shipwright.models.context import RefKind, RunContext


class GitError(RuntimeError):
    """git is missing or the directory is not a repository."""


def _git(args: list[str], cwd: Path | str | None = None) -> str:
    """Run git and return stripped stdout."""
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=cwd,
            text=True,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise GitError("git is not installed") from exc
    except subprocess.CalledProcessError as exc:
        raise GitError(f"git {' '.join(args)}: {exc.stderr.strip()}") from exc
    return out.strip()


def resolve_sha(ref: str, cwd: Path | str | None = None) -> str:
    """Commit a ref points at (``^{commit}`` peels annotated tags)."""
    return _git(["rev-parse", f"{ref}^{{commit}}"], cwd)


def is_tag(ref: str, cwd: Path | str | None = None) -> bool:
    try:
        _git(["show-ref", "--verify", "--quiet", f"refs/tags/{ref}"], cwd)
    except GitError:
        return False
    return True


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def context_for(
    ref: str,
    *,
    sha: str | None = None,
    tag: bool | None = None,
    actor: str | None = None,
    cwd: Path | str | None = None,
) -> RunContext:
    """Build the RunContext for ``ref``, asking git for whatever is missing."""
    kind = tag if tag is not None else is_tag(ref, cwd)
    return RunContext(
        commit_sha=sha or resolve_sha(ref, cwd),
        ref_name=ref,
        ref_kind=RefKind.TAG if kind else RefKind.BRANCH,
        actor=actor or current_user(),
    )

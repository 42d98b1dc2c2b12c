# sdkvm/core/git_ops/git_runner.py

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from sdkvm.core.errors import RepositoryError
from sdkvm.core.observability.metrics import record_git_op

_log = logging.getLogger("sdkvm.git")

# stderr fragments git prints when the object store itself is damaged
_CORRUPTION_MARKERS = (
    "bad object",
    "corrupt",
    "loose object",
    "packfile",
    "not a git repository",
    "unable to read tree",
    "missing blob",
    "missing tree",
    "broken link",
)


@dataclass(frozen=True)
class GitResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        return self.stderr or self.stdout or f"git exited with {self.returncode}"


def looks_corrupted(stderr: str) -> bool:
    s = (stderr or "").lower()
    return any(m in s for m in _CORRUPTION_MARKERS)


class GitRunner:
    """Runs the `git` executable (deterministic, no pager, no prompts)."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        git_dir: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> GitResult:
        argv = [self.executable, "--no-pager"]
        if git_dir is not None:
            argv.append(f"--git-dir={git_dir}")
        argv.extend(args)
        op = args[0] if args else "git"
        _log.debug("git %s (cwd=%s git_dir=%s)", " ".join(args), cwd, git_dir)
        try:
            p = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env={
                    **os.environ,
                    "GIT_PAGER": "cat",
                    "PAGER": "cat",
                    "GIT_TERMINAL_PROMPT": "0",
                },
            )
        except FileNotFoundError as e:
            record_git_op(op, False)
            raise RepositoryError("git is not installed or not available on PATH") from e
        except subprocess.TimeoutExpired as e:
            record_git_op(op, False)
            raise RepositoryError(
                f"git {op} timed out after {timeout}s",
                details={"args": list(args), "timeout": timeout},
            ) from e

        result = GitResult(
            args=list(args),
            returncode=p.returncode,
            stdout=(p.stdout or "").strip(),
            stderr=(p.stderr or "").strip(),
        )
        record_git_op(op, result.ok)
        return result

    def check(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        git_dir: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Run git and return stdout; raise RepositoryError on failure."""
        result = self.run(args, cwd=cwd, git_dir=git_dir, timeout=timeout)
        if not result.ok:
            raise RepositoryError(
                f"git {' '.join(args[:2])} failed: {result.message}",
                corrupted=looks_corrupted(result.stderr),
                details={"args": list(args), "returncode": result.returncode},
            )
        return result.stdout

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional

from sdkvm.core.errors import LinkError

from .base import DirectoryLinkBackend

_LONG_PATH_PREFIX = "\\\\?\\"


def _is_junction(p: Path) -> bool:
    isjunction = getattr(os.path, "isjunction", None)
    if isjunction is not None:
        return bool(isjunction(p))
    # Before 3.12: readlink succeeds on junctions, and islink() is False for them.
    try:
        os.readlink(p)
    except (OSError, ValueError):
        return False
    return not os.path.islink(p)


class JunctionBackend(DirectoryLinkBackend):
    """Windows directory junctions: no symlink privilege needed, absolute targets only."""

    name = "junction"

    def publish_directory_link(self, target: Path, link_path: Path) -> None:
        if link_path.exists() or os.path.lexists(link_path):
            if _is_junction(link_path) or link_path.is_symlink():
                os.rmdir(link_path)
            else:
                raise LinkError(
                    f"{link_path} exists and is not a link",
                    details={"link": str(link_path), "target": str(target)},
                )

        link_path.parent.mkdir(parents=True, exist_ok=True)
        p = subprocess.run(
            ["cmd", "/c", "mklink", "/J", str(link_path), str(target.resolve())],
            capture_output=True,
            text=True,
        )
        if p.returncode != 0:
            raise LinkError(
                f"failed to create junction {link_path} -> {target}: {(p.stderr or p.stdout).strip()}",
                details={"link": str(link_path), "target": str(target), "returncode": p.returncode},
            )

    def read_link(self, link_path: Path) -> Optional[Path]:
        if not (_is_junction(link_path) or link_path.is_symlink()):
            return None
        raw = os.readlink(link_path)
        if raw.startswith(_LONG_PATH_PREFIX):
            raw = raw[len(_LONG_PATH_PREFIX):]
        return Path(os.path.normpath(os.path.join(str(link_path.parent), raw)))

    def remove_link(self, link_path: Path) -> bool:
        if not (_is_junction(link_path) or link_path.is_symlink()):
            return False
        os.rmdir(link_path)
        return True

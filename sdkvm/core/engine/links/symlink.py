from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Optional

from sdkvm.core.errors import LinkError

from .base import DirectoryLinkBackend


class SymlinkBackend(DirectoryLinkBackend):
    """POSIX symbolic links, written relative so the cache root can move."""

    name = "symlink"

    def publish_directory_link(self, target: Path, link_path: Path) -> None:
        if link_path.exists() and not link_path.is_symlink():
            raise LinkError(
                f"{link_path} exists and is not a link",
                details={"link": str(link_path), "target": str(target)},
            )

        link_path.parent.mkdir(parents=True, exist_ok=True)
        rel = os.path.relpath(target, link_path.parent)
        tmp = link_path.parent / f".{link_path.name}.{uuid.uuid4().hex[:8]}"
        try:
            os.symlink(rel, tmp, target_is_directory=True)
            # rename(2) over an existing symlink is atomic
            os.replace(tmp, link_path)
        except OSError as e:
            raise LinkError(
                f"failed to link {link_path} -> {target}: {e}",
                details={"link": str(link_path), "target": str(target), "errno": e.errno},
            ) from e
        finally:
            if tmp.is_symlink():
                tmp.unlink()

    def read_link(self, link_path: Path) -> Optional[Path]:
        if not link_path.is_symlink():
            return None
        raw = os.readlink(link_path)
        return Path(os.path.normpath(os.path.join(str(link_path.parent), raw)))

    def remove_link(self, link_path: Path) -> bool:
        if not link_path.is_symlink():
            return False
        link_path.unlink()
        return True

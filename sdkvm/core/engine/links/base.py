from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional


class DirectoryLinkBackend(ABC):
    name: str

    @abstractmethod
    def publish_directory_link(self, target: Path, link_path: Path) -> None:
        """Create or replace a directory-level link at `link_path` pointing at `target`.

        Raises LinkError when the link cannot be created (insufficient privilege,
        a real directory occupying `link_path`, unsupported filesystem).
        """

    @abstractmethod
    def read_link(self, link_path: Path) -> Optional[Path]:
        """Absolute, normalized target of the link, or None if `link_path` is not a link."""

    @abstractmethod
    def remove_link(self, link_path: Path) -> bool:
        """Remove the link itself (never the target). Returns False if there was no link."""

    def points_to(self, link_path: Path, target: Path) -> bool:
        current = self.read_link(link_path)
        if current is None:
            return False
        return _same_path(current, target)


def _same_path(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return False

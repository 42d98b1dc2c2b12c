import os
from typing import Optional

from .base import DirectoryLinkBackend
from .junction import JunctionBackend
from .symlink import SymlinkBackend

LINK_BACKENDS = {
    "symlink": SymlinkBackend(),
    "junction": JunctionBackend(),
}


def select_link_backend(os_name: Optional[str] = None) -> DirectoryLinkBackend:
    """Pick the directory-link backend for this platform (called once, at the boundary)."""
    name = os_name or os.name
    if name == "nt":
        return LINK_BACKENDS["junction"]
    return LINK_BACKENDS["symlink"]

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import dataclass
from typing import Optional

from sdkvm.core.errors import ConfigError

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8": "arm64",
    "armv8l": "arm64",
}


@dataclass(frozen=True)
class Platform:
    """Host platform as the SDK's release infrastructure names it."""

    os: str    # linux | macos | windows  (release catalog naming)
    arch: str  # x64 | arm64

    @property
    def engine_os(self) -> str:
        # engine archives use "darwin" for macOS
        return "darwin" if self.os == "macos" else self.os

    @property
    def id(self) -> str:
        return f"{self.engine_os}-{self.arch}"

    @staticmethod
    def detect(sys_platform: Optional[str] = None, machine: Optional[str] = None) -> "Platform":
        sp = sys_platform or sys.platform
        if sp.startswith("linux"):
            os_name = "linux"
        elif sp == "darwin":
            os_name = "macos"
        elif sp in ("win32", "cygwin"):
            os_name = "windows"
        else:
            raise ConfigError(f"Unsupported platform {sp}")

        m = (machine or _platform.machine() or "").lower()
        arch = _ARCH_ALIASES.get(m)
        if arch is None:
            raise ConfigError(f"Unsupported platform {sp}/{m}")
        return Platform(os=os_name, arch=arch)

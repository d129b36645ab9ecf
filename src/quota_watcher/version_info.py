# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Version information sent along with language server requests.

Built once at startup with :meth:`VersionInfo.detect` and passed to the
components that need it.
"""

import json
import logging
import platform
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path
from typing import Optional

lib_logger = logging.getLogger("quota_watcher")

DISTRIBUTION_NAME = "quota-watcher"
UNKNOWN = "unknown"


def _normalize_os(system: str) -> str:
    system = system.lower()
    if system.startswith("win"):
        return "windows"
    if system in ("darwin", "macos"):
        return "darwin"
    if system == "linux":
        return "linux"
    return system or UNKNOWN


@dataclass(frozen=True)
class VersionInfo:
    extension_version: str = UNKNOWN
    ide_name: str = "Antigravity"
    ide_version: str = UNKNOWN
    os: str = UNKNOWN

    @classmethod
    def detect(
        cls,
        product_json: Optional[Path] = None,
        system: Optional[str] = None,
    ) -> "VersionInfo":
        """
        Collect version details from the installed package and the IDE.

        Args:
            product_json: Optional path to the IDE's product.json, which
                carries ``ideVersion`` (or ``version``) and ``nameLong``.
            system: Override for ``platform.system()``.
        """
        try:
            extension_version = metadata.version(DISTRIBUTION_NAME)
        except metadata.PackageNotFoundError:
            extension_version = UNKNOWN

        ide_name = cls.ide_name
        ide_version = UNKNOWN
        if product_json is not None:
            try:
                product = json.loads(Path(product_json).read_text(encoding="utf-8"))
                ide_version = product.get("ideVersion") or product.get("version") or UNKNOWN
                ide_name = product.get("nameLong") or product.get("nameShort") or ide_name
            except (OSError, json.JSONDecodeError) as e:
                lib_logger.warning(f"Failed to read {product_json}: {e}")

        info = cls(
            extension_version=extension_version,
            ide_name=ide_name,
            ide_version=ide_version,
            os=_normalize_os(system or platform.system()),
        )
        lib_logger.debug(f"Version info: {info.describe()}")
        return info

    def describe(self) -> str:
        return (
            f"quota-watcher v{self.extension_version} for "
            f"{self.ide_name} v{self.ide_version} ({self.os})"
        )

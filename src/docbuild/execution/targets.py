"""Which targets a release is documented for.

The default target is always built and is the one the build attempt records.
A package may ask for more in its manifest::

    [package.metadata.docs.rs]
    targets = ["x86_64-pc-windows-msvc", "aarch64-apple-darwin"]

(``extra-targets`` is read as an older spelling of ``targets``.) Extra targets
are built after the default one in the same slot, deduplicated, and capped
by the package's ``max_targets`` limit.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from docbuild.core.logging import get_logger
from docbuild.execution.models import validate_coordinate

logger = get_logger(__name__)

MANIFEST = "Cargo.toml"


def read_extra_targets(source_dir: Path) -> list[str]:
    """Targets requested by the manifest in *source_dir*, as written."""
    manifest = source_dir / MANIFEST
    if not manifest.is_file():
        return []
    try:
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        logger.warning("manifest_unreadable", path=str(manifest), error=str(exc))
        return []

    section: object = data
    for key in ("package", "metadata", "docs", "rs"):
        if not isinstance(section, dict):
            return []
        section = section.get(key, {})
    if not isinstance(section, dict):
        return []
    requested = section.get("targets", section.get("extra-targets", []))
    if not isinstance(requested, list):
        logger.warning("manifest_targets_ignored", path=str(manifest), value=repr(requested))
        return []
    return [item for item in requested if isinstance(item, str)]


def plan_extra_targets(default_target: str, requested: list[str], limit: int) -> list[str]:
    """Requested targets minus the default and duplicates, at most *limit*."""
    planned: list[str] = []
    for target in requested:
        if target == default_target or target in planned:
            continue
        try:
            validate_coordinate(target, "target")
        except ValueError:
            logger.warning("target_rejected", target=target)
            continue
        planned.append(target)
    if len(planned) > limit:
        logger.info("targets_capped", requested=len(planned), limit=limit)
    return planned[:limit]

"""Release manifest loading.

The manifest lives at the root of a freshly extracted release. It is read,
deleted and only then parsed, so it never ships in a published release even
when it turns out to be invalid.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import structlog
import yaml
from pydantic import ValidationError

from deploy_agent.core.exceptions import ManifestError
from deploy_agent.core.models import ReleaseManifest

logger = structlog.get_logger()

DEFAULT_MANIFEST_FILENAME = "deploy.yaml"


def load_release_manifest(
    release_dir: Path,
    filename: str = DEFAULT_MANIFEST_FILENAME,
) -> Optional[ReleaseManifest]:
    """Consume the release manifest.

    Returns:
        The parsed manifest, or None if the release has none

    Raises:
        ManifestError: If the manifest cannot be read, parsed or validated
    """
    manifest_path = release_dir / filename

    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No release manifest", release=release_dir.name)
        return None
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(out=f"Unable to read {filename}: {e}") from e

    try:
        manifest_path.unlink()
    except OSError as e:
        raise ManifestError(out=f"Unable to remove {filename}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ManifestError(out=f"Invalid YAML in {filename}: {e}") from e

    if not isinstance(data, dict):
        raise ManifestError(out=f"{filename} must contain a mapping")

    try:
        manifest = ReleaseManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(out=e.json()) from e

    logger.info(
        "Release manifest loaded",
        release=release_dir.name,
        shared=manifest.shared is not None,
        pre_publish=len(manifest.pre_publish or []),
        post_publish=len(manifest.post_publish or []),
    )
    return manifest

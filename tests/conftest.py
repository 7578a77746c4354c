"""
Pytest configuration and fixtures for deploy agent tests.
"""

import io
import zipfile
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import pytest
import yaml

from deploy_agent.core.config import TargetRegistry
from deploy_agent.core.models import Target


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """Target root with an (externally managed) shared directory."""
    root = tmp_path / "app"
    (root / "shared").mkdir(parents=True)
    return root


@pytest.fixture
def target(base_dir: Path) -> Target:
    return Target(repository="Acme/Web", secret="s3cret", base_dir=base_dir)


@pytest.fixture
def registry(target: Target) -> TargetRegistry:
    return TargetRegistry([target])


@pytest.fixture
def make_bundle() -> Callable[..., bytes]:
    """Build an in-memory zip bundle.

    ``manifest`` may be a dict (dumped as YAML) or a raw string written
    verbatim to deploy.yaml.
    """

    def _make(
        files: Optional[Dict[str, Union[str, bytes]]] = None,
        manifest: Optional[Union[dict, str]] = None,
    ) -> bytes:
        files = dict(files if files is not None else {"index.html": "<h1>hello</h1>"})
        if manifest is not None:
            files["deploy.yaml"] = manifest if isinstance(manifest, str) else yaml.safe_dump(manifest)

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            for name, data in files.items():
                zf.writestr(name, data)
        return buffer.getvalue()

    return _make

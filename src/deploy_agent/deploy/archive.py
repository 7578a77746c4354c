"""Bundle materialization: unpack an in-memory zip into a release directory."""

from __future__ import annotations

import io
import shutil
import zipfile
import zlib
from pathlib import Path

import structlog

from deploy_agent.core.exceptions import ExtractionError

logger = structlog.get_logger()


def _member_target(base: Path, name: str) -> Path:
    """Resolve an archive member name below base, rejecting zip-slip paths."""
    member_path = Path(name)
    if member_path.is_absolute() or ".." in member_path.parts:
        raise ExtractionError(f"Bundle contains unsafe path: {name}")
    target = (base / member_path).resolve()
    if target != base and base not in target.parents:
        raise ExtractionError(f"Bundle entry escapes release directory: {name}")
    return target


def materialize_bundle(bundle: bytes, dest_dir: Path) -> int:
    """Extract bundle bytes into dest_dir, creating it if needed.

    Directory entries are created idempotently; file entries get their parent
    directories created first, so archive ordering does not matter. On
    failure the partially written directory is left in place.

    Returns:
        Number of files written

    Raises:
        ExtractionError: If the bundle is malformed or cannot be written
    """
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        base = dest_dir.resolve()
        files_written = 0

        with zipfile.ZipFile(io.BytesIO(bundle), "r") as zf:
            for member in zf.infolist():
                target = _member_target(base, member.filename)
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(member, "r") as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                files_written += 1

    except ExtractionError:
        raise
    except (
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        zlib.error,
        EOFError,
        NotImplementedError,
        RuntimeError,
    ) as e:
        # Corrupt streams, unsupported compression and encrypted entries
        logger.error("Malformed bundle", dest=str(dest_dir), error=str(e))
        raise ExtractionError(f"Malformed bundle: {e}") from e
    except OSError as e:
        logger.error("Failed to write bundle", dest=str(dest_dir), error=str(e))
        raise ExtractionError(f"Failed to write bundle: {e}") from e

    logger.info("Bundle extracted", dest=str(dest_dir), files=files_written)
    return files_written

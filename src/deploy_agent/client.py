"""Sender side of the deploy protocol: sign and upload a bundle."""

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import httpx
import structlog

from deploy_agent.deploy.auth import (
    HEADER_REPOSITORY,
    HEADER_RUN_ID,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    compute_signature,
)

logger = structlog.get_logger()


@dataclass
class PushResult:
    status_code: int
    message: Optional[str]
    out: Optional[str]

    @property
    def ok(self) -> bool:
        return self.status_code == 200


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_bundle(directory: Path) -> bytes:
    """Zip a directory tree in memory, paths relative to the directory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for file_path in sorted(p for p in directory.rglob("*") if p.is_file()):
            zf.write(file_path, file_path.relative_to(directory).as_posix())
    return buffer.getvalue()


def sign_request(
    secret: str,
    repository: str,
    run_id: str,
    bundle: bytes,
    path: str = "/",
    query: str = "",
    timestamp: Optional[str] = None,
) -> Dict[str, str]:
    """Return the webhook headers for a bundle upload."""
    timestamp = timestamp or utc_timestamp()
    signature = compute_signature(
        secret.encode("utf-8"),
        timestamp,
        repository,
        run_id,
        path,
        query,
        bundle,
    )
    return {
        HEADER_REPOSITORY: repository,
        HEADER_RUN_ID: run_id,
        HEADER_TIMESTAMP: timestamp,
        HEADER_SIGNATURE: signature,
    }


def push_bundle(
    url: str,
    repository: str,
    secret: str,
    run_id: str,
    bundle: bytes,
    *,
    timeout: float = 600.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> PushResult:
    """Sign and POST a bundle to a deploy agent."""
    parsed = httpx.URL(url)
    headers = sign_request(
        secret,
        repository,
        run_id,
        bundle,
        path=parsed.path or "/",
        query=parsed.query.decode("ascii"),
    )
    headers["content-type"] = "application/zip"

    logger.info("Pushing bundle", url=url, repository=repository, run_id=run_id, size=len(bundle))
    with httpx.Client(timeout=timeout, transport=transport) as client:
        response = client.post(url, content=bundle, headers=headers)

    try:
        payload = response.json()
    except ValueError:
        payload = {"message": response.text}

    result = PushResult(
        status_code=response.status_code,
        message=payload.get("message"),
        out=payload.get("out"),
    )
    logger.info("Push finished", status_code=result.status_code, ok=result.ok)
    return result

"""Deploy webhook endpoint."""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Depends, Request

from deploy_agent.api.middleware import DEPLOY_COUNT, DEPLOY_DURATION
from deploy_agent.core.exceptions import BundleTooLargeError, DeployAgentError
from deploy_agent.core.models import DeployResponse
from deploy_agent.deploy.auth import Authenticator, SignedRequest
from deploy_agent.deploy.orchestrator import ReleaseOrchestrator


router = APIRouter()
logger = structlog.get_logger()


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def get_orchestrator(request: Request) -> ReleaseOrchestrator:
    return request.app.state.orchestrator


def _check_content_length(request: Request, limit: int | None) -> None:
    if limit is None:
        return
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise BundleTooLargeError()


@router.post("/", response_model=DeployResponse)
async def deploy_endpoint(
    request: Request,
    authenticator: Authenticator = Depends(get_authenticator),
    orchestrator: ReleaseOrchestrator = Depends(get_orchestrator),
) -> DeployResponse:
    """Authenticate a signed bundle upload and publish it as the live release."""
    start_time = time.time()
    outcome = "error"
    try:
        _check_content_length(request, orchestrator.max_bundle_size_bytes)
        body = await request.body()
        signed = SignedRequest.from_headers(
            request.url.path,
            request.url.query,
            body,
            request.headers,
        )
        target, run_id = authenticator.authenticate(signed)
        record = await orchestrator.deploy(target, run_id, body)
        outcome = "success"
        logger.info("Deploy succeeded", release=record.release_dir, previous=record.previous_dir)
        return DeployResponse(out=record.out)
    except DeployAgentError as e:
        outcome = e.code or "error"
        raise
    finally:
        DEPLOY_COUNT.labels(outcome=outcome).inc()
        DEPLOY_DURATION.observe(time.time() - start_time)

"""
VulnWatch - Webhook Endpoints

GitHub push and pull_request events, and payout events from bounty
platforms. Both paths are HMAC-SHA256 signed when a secret is configured.
"""
import json
import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from backend.api.dependencies import get_pipeline
from backend.config import settings
from backend.core.bugbounty import PayoutStatus
from backend.core.hosts import CommitSummary, verify_signature
from backend.core.timestamps import parse_timestamp
from backend.schemas.bounty import PayoutEvent
from backend.services.pipeline import Pipeline
from backend.services.remediation_submitter import ExternalStatusUpdate
from backend.services.repository_registry import canonical_url

logger = logging.getLogger(__name__)

router = APIRouter()


async def _verified_json(request: Request, signature: str, secret: str) -> Dict[str, Any]:
    payload = await request.body()
    if not verify_signature(payload, signature, secret):
        logger.warning(f"Rejected webhook with bad signature from {request.client.host if request.client else '?'}")
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        return json.loads(payload or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Payload is not JSON")


def _repository_url(payload: Dict[str, Any]) -> str:
    repository = payload.get("repository") or {}
    return canonical_url(repository.get("html_url") or repository.get("clone_url") or "") or ""


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: str = Header("ping"),
    x_hub_signature_256: str = Header(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Push events feed the ingestor; closed pull_request events feed merge tracking"""
    payload = await _verified_json(request, x_hub_signature_256, settings.GITHUB_WEBHOOK_SECRET)

    if x_github_event == "ping":
        return {"status": "pong"}

    if x_github_event == "push":
        commits = [
            CommitSummary(
                sha=c["id"],
                committed_at=parse_timestamp(c.get("timestamp")),
                message=c.get("message", ""),
            )
            for c in payload.get("commits", [])
            if c.get("id")
        ]
        handed = await pipeline.ingestor.handle_push(_repository_url(payload), commits)
        return {"status": "accepted", "commits": handed}

    if x_github_event == "pull_request":
        pr = payload.get("pull_request") or {}
        if payload.get("action") != "closed":
            return {"status": "ignored"}
        merged = bool(pr.get("merged"))
        submission = await pipeline.submitter.apply_status_update(ExternalStatusUpdate(
            repository_url=_repository_url(payload),
            host_ref=str(pr.get("number", "")),
            merged=merged,
            closed=not merged,
            merged_at=parse_timestamp(pr.get("merged_at")),
            source="webhook",
        ))
        return {"status": "accepted" if submission else "ignored"}

    logger.debug(f"Ignoring GitHub event {x_github_event}")
    return {"status": "ignored"}


@router.post("/bounty/{platform}")
async def bounty_webhook(
    platform: str,
    request: Request,
    x_signature_256: str = Header(None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Payout status pushed by a bounty platform"""
    if platform != "manual" and pipeline.platforms.get(platform) is None:
        raise HTTPException(status_code=404, detail=f"Unknown bounty platform '{platform}'")
    payload = await _verified_json(request, x_signature_256, settings.BOUNTY_WEBHOOK_SECRET)
    try:
        event = PayoutEvent.model_validate(payload)
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    bounty = await pipeline.reconciler.apply_payout(
        platform, PayoutStatus(external_id=event.external_id, state=event.state, reason=event.reason)
    )
    if bounty is None:
        raise HTTPException(status_code=404, detail=f"Bounty {platform}/{event.external_id} not found")
    return {"status": bounty.status}

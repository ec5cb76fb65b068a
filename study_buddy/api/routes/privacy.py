"""
Consent and data erasure endpoints.
"""

from fastapi import APIRouter
from pydantic import BaseModel

from study_buddy.api.dependencies import PipelineDep, UserIdDep

router = APIRouter(prefix="/privacy", tags=["privacy"])


class ConsentBody(BaseModel):
    consent_text: str


@router.get("/consent")
async def consent_status(user_id: UserIdDep, pipeline: PipelineDep):
    return await pipeline.compliance.require_consent(user_id)


@router.post("/consent")
async def grant_consent(body: ConsentBody, user_id: UserIdDep, pipeline: PipelineDep):
    return await pipeline.compliance.grant_consent(user_id, body.consent_text)


@router.delete("/consent")
async def revoke_consent(user_id: UserIdDep, pipeline: PipelineDep):
    return {"revoked": await pipeline.compliance.revoke_consent(user_id)}


@router.delete("/data")
async def erase_data(user_id: UserIdDep, pipeline: PipelineDep):
    """Remove everything stored about the caller."""
    return {"erased": await pipeline.compliance.erase_user_data(user_id)}

"""
Study session endpoints.
"""

from fastapi import APIRouter

from study_buddy.api.dependencies import PipelineDep, UserIdDep

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/{session_id}/health")
async def session_health(session_id: str, user_id: UserIdDep, pipeline: PipelineDep):
    return pipeline.get_session_health(session_id, user_id).model_dump(mode="json")


@router.post("/{session_id}/end")
async def end_session(session_id: str, user_id: UserIdDep, pipeline: PipelineDep):
    report = await pipeline.end_session(session_id, user_id)
    return report.model_dump(mode="json")

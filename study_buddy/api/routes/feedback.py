"""
Feedback endpoint.
"""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from study_buddy.api.dependencies import PipelineDep, UserIdDep
from study_buddy.feedback.models import ExplicitFeedback, FeedbackRequest, FeedbackSource, ImplicitFeedback

router = APIRouter(tags=["feedback"])


class FeedbackBody(BaseModel):
    interaction_id: str
    session_id: Optional[str] = None
    source: FeedbackSource
    explicit: Optional[ExplicitFeedback] = None
    implicit: Optional[ImplicitFeedback] = None


@router.post("/feedback")
async def submit_feedback(body: FeedbackBody, user_id: UserIdDep, pipeline: PipelineDep):
    """Quick path: store and score. Learning and pattern updates run in the background."""
    feedback = await pipeline.submit_feedback_fast(FeedbackRequest(user_id=user_id, **body.model_dump()))
    return feedback.model_dump(mode="json")

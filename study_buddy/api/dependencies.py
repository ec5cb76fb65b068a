"""
FastAPI dependency injection for Study Buddy services.
"""

import uuid
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request

from study_buddy.core.pipeline import StudyBuddyPipeline


def get_pipeline(request: Request) -> StudyBuddyPipeline:
    """Get the pipeline built in the lifespan."""
    return request.app.state.pipeline


def parse_user_id(value: Optional[str]) -> Optional[str]:
    """Canonical form of a UUID user id, or None when absent or malformed."""
    if not value:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    The caller's user id, already authenticated upstream.

    The id is trusted as given; only its presence and UUID shape are checked.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = parse_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id must be a UUID")
    return user_id


PipelineDep = Annotated[StudyBuddyPipeline, Depends(get_pipeline)]
UserIdDep = Annotated[str, Depends(get_user_id)]

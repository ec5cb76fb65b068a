"""
Chat endpoints: one-shot and server-sent-events streaming.
"""

import json
from typing import Optional, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from study_buddy.api.dependencies import PipelineDep, UserIdDep

router = APIRouter(tags=["chat"])


class ChatBody(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    chat_type: str = "general"
    is_personal_query: bool = False
    subject: Optional[str] = None
    context_level: Optional[str] = None
    token_limit: Optional[int] = None
    goals: List[str] = Field(default_factory=list)


@router.post("/chat")
async def chat(body: ChatBody, user_id: UserIdDep, pipeline: PipelineDep):
    """Answer one chat turn. Degraded answers still return 200 with fallback set."""
    response = await pipeline.process_chat_turn(user_id, **body.model_dump())
    headers = {"Retry-After": str(response.retry_after)} if response.retry_after else None
    return JSONResponse(content=response.as_dict(), headers=headers)


def format_sse(event_type: str, data) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


@router.post("/chat/stream")
async def chat_stream(body: ChatBody, user_id: UserIdDep, pipeline: PipelineDep):
    """Stream one chat turn. The last event is always `end`."""
    events = await pipeline.stream_chat_turn(user_id, **body.model_dump())

    async def sse():
        async for event in events:
            yield format_sse(event["type"], event["data"])

    return StreamingResponse(sse(), media_type="text/event-stream")

"""
Value types shared by several components.
"""

from typing import Literal

from pydantic import BaseModel, Field, computed_field


class TokenUsage(BaseModel):
    """Token accounting for a context bundle or a generation call."""
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)

    @computed_field
    @property
    def total(self) -> int:
        return self.input + self.output


class ConversationTurn(BaseModel):
    """One message of conversation history."""
    role: Literal["user", "assistant", "system"]
    content: str

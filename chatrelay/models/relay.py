from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class RelayRequest(BaseModel):
    """
    One inbound turn to relay upstream. Built per event and never stored.
    """

    session_id: str = Field(..., min_length=1)
    message: str = Field(..., description="New user message")
    system_prompt: Optional[str] = Field(
        default=None, description="Overrides the default persona prompt"
    )
    stream: bool = Field(default=False, description="Incremental delivery requested")


class CompletionResult(BaseModel):
    text: str
    usage: Optional[dict[str, Any]] = None
    model: Optional[str] = None


class Fragment(BaseModel):
    type: Literal["fragment"] = "fragment"
    text: str


class Complete(BaseModel):
    type: Literal["complete"] = "complete"
    text: str


class Failed(BaseModel):
    type: Literal["error"] = "error"
    code: str
    reason: str


RelayEvent = Annotated[Union[Fragment, Complete, Failed], Field(discriminator="type")]


class StreamOutcome(BaseModel):
    """
    Result of a streaming relay once its terminal event has been delivered.
    """

    session_id: str
    completed: bool
    text: str = ""
    fragment_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None


__all__ = [
    "Complete",
    "CompletionResult",
    "Failed",
    "Fragment",
    "RelayEvent",
    "RelayRequest",
    "StreamOutcome",
]

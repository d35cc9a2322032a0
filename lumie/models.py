from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import normalize_text


class ChatRequest(BaseModel):
    """Request payload for chat API."""
    model_config = ConfigDict(populate_by_name=True)

    message: Any = None
    user_id: Optional[str] = Field(default=None, alias="userId")


class ChatResponse(BaseModel):
    """Response payload returned by the chat API."""
    reply: str
    context: str
    intent: str
    confidence: float


class RateLimitedResponse(BaseModel):
    """Throttle payload returned instead of a reply when the caller is over budget."""
    model_config = ConfigDict(populate_by_name=True)

    reply: str
    context: str = "rate-limit"
    retry_at: str = Field(serialization_alias="retryAt")


class HealthResponse(BaseModel):
    status: str
    intents: int
    sessions: int


class IntentRecordPayload(BaseModel):
    """One training record as stored on disk."""
    model_config = ConfigDict(populate_by_name=True)

    intent: str
    utterances: List[str] = Field(default_factory=list)
    answers: List[str]
    context: Optional[str] = None
    set_context: Optional[str] = Field(default=None, alias="setContext")

    @field_validator("intent")
    @classmethod
    def _intent_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("intent id must not be blank")
        return value

    @field_validator("utterances")
    @classmethod
    def _normalize_utterances(cls, value: List[str]) -> List[str]:
        return [normalized for normalized in (normalize_text(item) for item in value) if normalized]

    @field_validator("context", "set_context")
    @classmethod
    def _blank_context_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _check_sizes(self) -> "IntentRecordPayload":
        if not [answer for answer in self.answers if answer.strip()]:
            raise ValueError(f"intent {self.intent!r} has no answers")
        if not self.utterances and self.intent != "None":
            raise ValueError(f"intent {self.intent!r} has no utterances")
        return self

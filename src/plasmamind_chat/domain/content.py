"""Provider-facing content types shared by the composer, adapter and provider."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MODEL_ROLE = "model"
USER_ROLE = "user"


class InlineData(BaseModel):
    """Binary payload tagged with its media type; ``data`` is base64 text."""

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str


class Part(BaseModel):
    """One piece of a turn: either text or inline binary data."""

    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None
    inline_data: Optional[InlineData] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.inline_data is not None:
            return {
                "inline_data": {
                    "mime_type": self.inline_data.mime_type,
                    "data": self.inline_data.data,
                }
            }
        return {"text": self.text or ""}


class Turn(BaseModel):
    """A role-tagged, multi-part unit of conversation sent to the model."""

    model_config = ConfigDict(frozen=True)

    role: str
    parts: List[Part] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [part.to_dict() for part in self.parts]}


class Candidate(BaseModel):
    """One candidate output of a non-streaming generation call."""

    model_config = ConfigDict(frozen=True)

    parts: List[Part] = Field(default_factory=list)

# api/schemas.py
# Request bodies are deliberately permissive: missing or malformed fields are
# reported by api.handlers as a 400 {error, detail} payload rather than a 422.
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class GenerateBody(BaseModel):
    description: Optional[str] = None
    type: Optional[str] = Field(default=None, description="flowchart | sequence")
    model: Optional[str] = None


class ChatMessageBody(BaseModel):
    role: Optional[str] = None
    content: Any = None


class ChatBody(BaseModel):
    messages: Optional[List[ChatMessageBody]] = None
    diagram: Optional[str] = Field(default=None, description="Current diagram text, if any")
    model: Optional[str] = None


class CodeResponse(BaseModel):
    code: str


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    error: str
    detail: str

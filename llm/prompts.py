# llm/prompts.py
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple


class DiagramKind(str, Enum):
    FLOWCHART = "flowchart"
    SEQUENCE = "sequence"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class GenerationRequest:
    description: str
    diagram_kind: DiagramKind
    model_override: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass(frozen=True)
class ChatRequest:
    history: Tuple[ChatMessage, ...]
    diagram: Optional[str] = None
    model_override: Optional[str] = None


SYSTEM_PROMPTS = {
    DiagramKind.FLOWCHART: """You convert natural language descriptions into valid Mermaid flowcharts. Output ONLY Mermaid code. No backticks, no explanations.
Use the format:
flowchart TD
A[Start] --> B{Check}
B -- Yes --> C[Do X]
B -- No --> D[Do Y]
C --> E[End]
D --> E[End]
""",
    DiagramKind.SEQUENCE: """You convert natural language descriptions into valid Mermaid sequence diagrams. Output ONLY Mermaid code. No backticks, no explanations.
Use the format:
sequenceDiagram
participant U as User
participant S as System
U->>S: Ask
S-->>U: Answer
""",
}

CHAT_SYSTEM_PROMPT = """You are a diagram assistant that edits Mermaid diagrams through conversation.
When the user asks for a change, reply with the complete updated Mermaid code only. No backticks, no explanations.
If the request is a question rather than a change, answer briefly in plain text.
"""

ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


def system_prompt(kind: DiagramKind) -> str:
    return SYSTEM_PROMPTS.get(kind, SYSTEM_PROMPTS[DiagramKind.FLOWCHART])


def generation_prompt(request: GenerationRequest) -> str:
    return f"Diagram type: {request.diagram_kind.value}\nDescription:\n{request.description}"


def flatten_history(history: Sequence[ChatMessage]) -> str:
    """Render the conversation as role-labelled turns, oldest first."""
    return "\n\n".join(f"{ROLE_LABELS[m.role]}: {m.content}" for m in history)


def chat_prompt(request: ChatRequest) -> str:
    parts = []
    if request.diagram and request.diagram.strip():
        parts.append(f"Current diagram:\n{request.diagram.strip()}")
    parts.append(f"Conversation:\n{flatten_history(request.history)}")
    parts.append("Assistant:")
    return "\n\n".join(parts)

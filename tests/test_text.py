import pytest

from llm.text import strip_code_fence


def test_strips_mermaid_fence():
    raw = "```mermaid\nflowchart TD\nA[Start] --> B[End]\n```"
    assert strip_code_fence(raw) == "flowchart TD\nA[Start] --> B[End]"


def test_strips_bare_fence_and_whitespace():
    assert strip_code_fence("  \n```\nsequenceDiagram\nU->>S: Ask\n```\n  ") == "sequenceDiagram\nU->>S: Ask"


def test_strips_opening_fence_with_code_on_same_line():
    assert strip_code_fence("```mermaid flowchart TD\nA-->B\n```") == "flowchart TD\nA-->B"


def test_plain_text_is_only_trimmed():
    assert strip_code_fence("  flowchart LR\nA --> B \n") == "flowchart LR\nA --> B"


def test_none_and_empty():
    assert strip_code_fence(None) == ""
    assert strip_code_fence("```") == ""


@pytest.mark.parametrize("raw", [
    "```mermaid\nflowchart TD\nA --> B\n```",
    "```\n```mermaid\nA\n```\n```",
    "   ```js\nconsole.log(1)\n```   ",
    "``````",
    "flowchart TD\nA --> B```",
    "```mermaid",
    "text with ``` in the middle",
    "\r\n```mermaid\r\nA --> B\r\n```\r\n",
    "",
    "``` ```",
    "```mermaid flowchart TD\nA-->B\n```",
])
def test_idempotent(raw):
    once = strip_code_fence(raw)
    assert strip_code_fence(once) == once

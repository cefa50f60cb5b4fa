# llm/text.py
import re

# A fence delimiter and optional language tag at the very start; code may follow on the same line
_FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_+-]*[ \t]*(?:\r?\n)?")
_FENCE_CLOSE = re.compile(r"(?:\r?\n)?```$")


def strip_code_fence(text: str) -> str:
    """
    Remove a leading/trailing fenced-code marker and surrounding whitespace.

    Applied until nothing changes, so strip_code_fence(strip_code_fence(x))
    == strip_code_fence(x) for any input.
    """
    result = (text or "").strip()
    while True:
        cleaned = _FENCE_OPEN.sub("", result, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned, count=1).strip()
        if cleaned == result:
            return cleaned
        result = cleaned

# streaming/protocol.py
"""
Server-Sent Events framing for the chat stream.

Every frame is

    event: <chunk|done|error>
    data: <compact JSON>
    <blank line>

with payload {"text": ...} for chunk/done and {"message": ...} for error.
A stream is any number of chunk frames followed by exactly one done or
error frame.
"""
import codecs
import json
from dataclasses import dataclass
from typing import List, Optional, Union

CHUNK = "chunk"
DONE = "done"
ERROR = "error"

FRAME_DELIMITER = "\n\n"


@dataclass(frozen=True)
class Chunk:
    text: str
    name = CHUNK


@dataclass(frozen=True)
class Done:
    text: str
    name = DONE


@dataclass(frozen=True)
class Error:
    message: str
    name = ERROR


@dataclass(frozen=True)
class DecodeError:
    """A frame that could not be parsed. Produced by the decoder only, never sent."""
    raw: str
    reason: str
    name = "decode_error"


StreamEvent = Union[Chunk, Done, Error]
DecodedEvent = Union[Chunk, Done, Error, DecodeError]


def is_terminal(event) -> bool:
    return isinstance(event, (Done, Error))


def encode_event(event: StreamEvent) -> str:
    """Serialize one event as an SSE frame."""
    if isinstance(event, Error):
        payload = {"message": event.message}
    elif isinstance(event, (Chunk, Done)):
        payload = {"text": event.text}
    else:
        raise TypeError(f"Cannot encode {type(event).__name__}")
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event.name}\ndata: {data}{FRAME_DELIMITER}"


def parse_frame(frame: str) -> Optional[DecodedEvent]:
    """
    Parse one frame (without its trailing blank line).

    Returns None for frames with no data and no event name (comments,
    keep-alives); DecodeError for anything that cannot be understood.
    """
    name = None
    data_lines = []
    for line in frame.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            name = value.strip()
        elif field == "data":
            data_lines.append(value)

    if name is None and not data_lines:
        return None

    data = "\n".join(data_lines)
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError as exc:
        return DecodeError(raw=frame, reason=f"invalid JSON payload: {exc.msg}")
    if not isinstance(payload, dict):
        return DecodeError(raw=frame, reason="payload is not an object")

    if name == CHUNK:
        text = payload.get("text")
        if isinstance(text, str):
            return Chunk(text)
    elif name == DONE:
        text = payload.get("text", "")
        if isinstance(text, str):
            return Done(text)
    elif name == ERROR:
        message = payload.get("message")
        if message is None:
            message = payload.get("error", "")
        return Error(str(message))
    else:
        return DecodeError(raw=frame, reason=f"unknown event {name!r}")
    return DecodeError(raw=frame, reason=f"missing field in {name} payload")


class SSEDecoder:
    """
    Incremental frame decoder.

    Feed it raw bytes as they arrive; it returns every event completed by
    that read and keeps the remainder buffered.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: Union[bytes, str]) -> List[DecodedEvent]:
        if isinstance(data, bytes):
            text = self._decoder.decode(data)
        else:
            text = data
        self._buffer += text
        # A CR at the very end might be the first half of a CRLF
        if self._buffer.endswith("\r"):
            pending, self._buffer = self._buffer[:-1], "\r"
        else:
            pending, self._buffer = self._buffer, ""
        pending = pending.replace("\r\n", "\n").replace("\r", "\n")
        *frames, rest = pending.split(FRAME_DELIMITER)
        self._buffer = rest + self._buffer
        return [event for event in map(parse_frame, frames) if event is not None]

    def flush(self) -> List[DecodedEvent]:
        """Parse whatever is left once the channel has closed."""
        tail = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n").replace("\r", "\n")
        self._buffer = ""
        if not tail.strip():
            return []
        event = parse_frame(tail.strip("\n"))
        return [event] if event is not None else []

"""Reassemble fragmented WebSocket frames into complete text messages."""
from __future__ import annotations

import codecs
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

FrameData = Union[str, bytes]


class FrameKind(Enum):
    TEXT = "text"
    OTHER = "other"


@dataclass(frozen=True)
class RawFrame:
    """One transport chunk plus its end-of-message flag."""

    data: FrameData
    is_final: bool
    kind: FrameKind = FrameKind.TEXT

    @classmethod
    def from_fragment(cls, fragment: FrameData, *, is_final: bool) -> "RawFrame":
        # websockets hands text fragments over as str and binary ones as bytes.
        kind = FrameKind.TEXT if isinstance(fragment, str) else FrameKind.OTHER
        return cls(data=fragment, is_final=is_final, kind=kind)


class MessageReassembler:
    """Buffers text frames until a final frame closes the message.

    Byte chunks are decoded incrementally so a multi-byte UTF-8 sequence split
    across two frames survives intact. Non-text frames are dropped.
    """

    def __init__(self) -> None:
        self._parts: List[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> bool:
        return bool(self._parts)

    def feed(self, frame: RawFrame) -> Optional[str]:
        """Append ``frame``; return the complete message once it is final."""
        if frame.kind is not FrameKind.TEXT:
            return None
        data = frame.data
        if isinstance(data, bytes):
            chunk = self._decoder.decode(data, final=frame.is_final)
        else:
            chunk = data
        if chunk:
            self._parts.append(chunk)
        if not frame.is_final:
            return None
        message = "".join(self._parts)
        self.reset()
        return message

    def reset(self) -> None:
        self._parts.clear()
        self._decoder.reset()

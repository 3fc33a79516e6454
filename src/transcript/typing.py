from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

Role = Literal["learner", "tutor"]
Channel = Literal["voice", "text"]

LEARNER: Role = "learner"
TUTOR: Role = "tutor"
VOICE: Channel = "voice"
TEXT: Channel = "text"

BLACKBOARD = "blackboard"


@dataclass(frozen=True)
class NormalizedEvent:
    """One inbound event after normalisation, whatever source produced it."""

    role: str              # "learner" | "tutor"
    text: str              # trimmed, never empty
    channel: str           # "voice" | "text"
    annotation: Optional[str] = None  # "blackboard" for tool-call content

    @property
    def is_annotation(self) -> bool:
        return self.annotation is not None


@dataclass
class Message:
    """A single transcript entry owned by the reconciliation engine."""

    id: str
    role: str
    text: str
    channel: str
    created_at: float
    annotation: Optional[str] = None
    final: bool = True

    @property
    def is_annotation(self) -> bool:
        return self.annotation is not None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "channel": self.channel,
            "created_at": self.created_at,
            "final": self.final,
        }
        if self.annotation:
            d["annotation"] = self.annotation
        return d

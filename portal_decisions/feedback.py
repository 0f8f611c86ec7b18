"""Toast-style feedback shown to the acting user."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, List, Protocol

DEFAULT = "default"
WARNING = "warning"
DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Feedback:
    title: str
    description: str
    variant: str = DEFAULT

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


class FeedbackSink(Protocol):
    def push(self, feedback: Feedback) -> None:  # pragma: no cover - protocol
        ...


class CollectingFeedback:
    """Feedback sink that keeps toasts in order, for HTTP responses and tests."""

    def __init__(self) -> None:
        self.items: List[Feedback] = []

    def push(self, feedback: Feedback) -> None:
        self.items.append(feedback)

    def as_list(self) -> List[Dict[str, str]]:
        return [item.as_dict() for item in self.items]


class NullFeedback:
    def push(self, feedback: Feedback) -> None:
        return None

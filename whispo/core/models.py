"""
Value types shared by the tool handlers, stores and the context aggregator.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class GlossaryEntry:
    phrase: str
    replacement: str
    context: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"phrase": self.phrase, "replacement": self.replacement}
        if self.context:
            data["context"] = self.context
        return data


@dataclass(frozen=True)
class HistoryItem:
    id: str
    created_at: int  # epoch ms
    transcript: str
    duration: int = 0  # ms
    original_transcript: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    description: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    updated_at: int = 0
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ActiveApplication:
    """Foreground application as reported by the platform lookup."""
    name: str
    executable: str = ""
    title: str = ""
    file_path: Optional[str] = None

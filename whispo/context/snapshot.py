"""
Context snapshot value types.

A ``ContextSnapshot`` is built fresh for every enhancement call and is never
mutated afterwards: mappings are wrapped in ``MappingProxyType`` and lists are
turned into tuples, all the way down.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from whispo.core.models import ActiveApplication, GlossaryEntry

CONTEXT_TYPES = ("code-editor", "terminal", "email", "chat", "document", "browser", "notes", "generic")

# First match wins; matched against the lower-cased executable name.
_CONTEXT_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("code-editor", ("code", "studio")),
    ("terminal", ("terminal", "iterm", "cmd")),
    ("email", ("mail", "outlook")),
    ("chat", ("slack", "discord", "teams")),
    ("document", ("word", "docs")),
    ("browser", ("chrome", "firefox", "safari")),
    ("notes", ("notes", "notion")),
)


def classify_context(executable: str) -> str:
    """Map an executable name to one of ``CONTEXT_TYPES``."""
    name = (executable or "").lower()
    for context_type, needles in _CONTEXT_PATTERNS:
        if any(needle in name for needle in needles):
            return context_type
    return "generic"


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists into read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, set):
        return frozenset(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of ``freeze`` for JSON output."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (tuple, list, frozenset, set)):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class AppContext:
    name: str
    executable: str
    window_title: str
    context_type: str

    @classmethod
    def from_application(cls, app: ActiveApplication) -> "AppContext":
        return cls(
            name=app.name,
            executable=app.executable,
            window_title=app.title,
            context_type=classify_context(app.executable or app.name),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "executable": self.executable,
            "windowTitle": self.window_title,
            "contextType": self.context_type,
        }


@dataclass(frozen=True)
class ContextSnapshot:
    created_at: int  # epoch ms
    active_application: Optional[AppContext] = None
    active_file: Optional[str] = None
    glossary: Tuple[GlossaryEntry, ...] = ()
    recent_interactions: Tuple[str, ...] = ()
    provider_context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    contributing_providers: Tuple[str, ...] = ()
    omitted_providers: Tuple[str, ...] = ()
    elapsed_ms: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "glossary", tuple(self.glossary))
        object.__setattr__(self, "recent_interactions", tuple(self.recent_interactions))
        object.__setattr__(self, "provider_context", freeze(dict(self.provider_context)))
        object.__setattr__(self, "contributing_providers", tuple(self.contributing_providers))
        object.__setattr__(self, "omitted_providers", tuple(self.omitted_providers))

    @property
    def context_type(self) -> str:
        return self.active_application.context_type if self.active_application else "generic"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "createdAt": self.created_at,
            "activeApplication": self.active_application.to_dict() if self.active_application else None,
            "activeFile": self.active_file,
            "glossary": [entry.to_dict() for entry in self.glossary],
            "recentInteractions": list(self.recent_interactions),
            "providerContext": thaw(self.provider_context),
            "contributingProviders": list(self.contributing_providers),
            "omittedProviders": list(self.omitted_providers),
            "elapsedMs": self.elapsed_ms,
        }

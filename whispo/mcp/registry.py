"""
Tool registry shared by both protocol roles.

Entries are keyed by ``(namespace, name)``: local tools live in the ``local``
namespace, tools discovered from a provider live under the provider's name.
Writers build a new mapping and swap it in under the lock; readers grab the
current mapping and never see one that is half updated.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import jsonschema
from jsonschema.exceptions import SchemaError

from whispo.core.config import LOCAL_NAMESPACE
from whispo.mcp.errors import InvalidArguments, ToolNotFound

logger = logging.getLogger("Whispo.mcp.registry")

ToolKey = Tuple[str, str]


def qualify(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_qualified(qualified: str) -> ToolKey:
    """``"git/status"`` -> ``("git", "status")``; bare names are local."""
    namespace, sep, name = qualified.partition("/")
    if not sep:
        return LOCAL_NAMESPACE, qualified
    return namespace, name


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=lambda: {"type": "object"})
    namespace: str = LOCAL_NAMESPACE
    annotations: Mapping[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return qualify(self.namespace, self.name)

    def to_mcp(self) -> Dict[str, Any]:
        """Wire shape used in ``tools/list`` results."""
        tool: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }
        if self.annotations:
            tool["annotations"] = dict(self.annotations)
        return tool

    @classmethod
    def from_mcp(cls, namespace: str, tool: Mapping[str, Any]) -> "ToolDescriptor":
        schema = tool.get("inputSchema")
        annotations = tool.get("annotations")
        return cls(
            name=str(tool["name"]),
            description=str(tool.get("description") or ""),
            input_schema=schema if isinstance(schema, dict) else {"type": "object"},
            namespace=namespace,
            annotations=annotations if isinstance(annotations, dict) else {},
        )


@dataclass(frozen=True)
class ToolEntry:
    """A descriptor plus its binding: a local handler or a remote provider."""

    descriptor: ToolDescriptor
    handler: Optional[Callable[..., Any]] = None
    provider: Optional[str] = None
    mutating: bool = False
    stale: bool = False
    validator: Any = field(default=None, compare=False, repr=False)

    @property
    def is_local(self) -> bool:
        return self.provider is None


def _build_validator(descriptor: ToolDescriptor):
    schema = dict(descriptor.input_schema)
    try:
        validator_cls = jsonschema.validators.validator_for(schema, default=jsonschema.Draft202012Validator)
        validator_cls.check_schema(schema)
    except SchemaError as exc:
        reason = exc.message
    except TypeError as exc:
        reason = str(exc)
    else:
        return validator_cls(schema)
    logger.warning(
        "Tool %s has an invalid input schema (%s); argument validation disabled",
        descriptor.qualified_name,
        reason,
    )
    return None


class ToolRegistry:
    """Lock-guarded, copy-on-write catalogue of local and remote tools."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Mapping[ToolKey, ToolEntry] = MappingProxyType({})

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def register_local(
        self,
        descriptor: ToolDescriptor,
        handler: Callable[..., Any],
        mutating: bool = False,
    ) -> ToolEntry:
        if descriptor.namespace != LOCAL_NAMESPACE:
            descriptor = replace(descriptor, namespace=LOCAL_NAMESPACE)
        entry = ToolEntry(
            descriptor=descriptor,
            handler=handler,
            mutating=mutating,
            validator=_build_validator(descriptor),
        )
        with self._lock:
            updated = dict(self._entries)
            updated[(LOCAL_NAMESPACE, descriptor.name)] = entry
            self._entries = MappingProxyType(updated)
        return entry

    def replace_provider_tools(self, provider: str, descriptors: Iterable[ToolDescriptor]) -> List[ToolEntry]:
        """Swap in a provider's full catalogue in one step."""
        if provider == LOCAL_NAMESPACE:
            raise ValueError("local tools cannot be replaced by a provider catalogue")
        fresh: Dict[ToolKey, ToolEntry] = {}
        for descriptor in descriptors:
            if descriptor.namespace != provider:
                descriptor = replace(descriptor, namespace=provider)
            fresh[(provider, descriptor.name)] = ToolEntry(
                descriptor=descriptor,
                provider=provider,
                validator=_build_validator(descriptor),
            )
        with self._lock:
            updated = {key: entry for key, entry in self._entries.items() if key[0] != provider}
            updated.update(fresh)
            self._entries = MappingProxyType(updated)
        logger.debug("Registry now holds %d tools for provider %s", len(fresh), provider)
        return list(fresh.values())

    def mark_stale(self, provider: str) -> int:
        with self._lock:
            updated = dict(self._entries)
            count = 0
            for key, entry in self._entries.items():
                if key[0] == provider and not entry.stale:
                    updated[key] = replace(entry, stale=True)
                    count += 1
            if count:
                self._entries = MappingProxyType(updated)
        return count

    def prune_provider(self, provider: str) -> int:
        if provider == LOCAL_NAMESPACE:
            return 0
        with self._lock:
            updated = {key: entry for key, entry in self._entries.items() if key[0] != provider}
            removed = len(self._entries) - len(updated)
            self._entries = MappingProxyType(updated)
        if removed:
            logger.info("Pruned %d tools of provider %s", removed, provider)
        return removed

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def snapshot(self) -> Mapping[ToolKey, ToolEntry]:
        """Point-in-time read-only view."""
        with self._lock:
            return self._entries

    def get(self, namespace: str, name: str) -> Optional[ToolEntry]:
        return self.snapshot().get((namespace, name))

    def resolve(self, qualified: str) -> ToolEntry:
        namespace, name = split_qualified(qualified)
        entry = self.get(namespace, name)
        if entry is None:
            raise ToolNotFound(name, namespace=namespace)
        return entry

    def entries(self, namespace: Optional[str] = None, include_stale: bool = True) -> List[ToolEntry]:
        return [
            entry
            for (ns, _), entry in self.snapshot().items()
            if (namespace is None or ns == namespace) and (include_stale or not entry.stale)
        ]

    def remote_entries(self, include_stale: bool = False) -> List[ToolEntry]:
        return [
            entry
            for (ns, _), entry in self.snapshot().items()
            if ns != LOCAL_NAMESPACE and (include_stale or not entry.stale)
        ]

    def namespaces(self) -> List[str]:
        return sorted({ns for ns, _ in self.snapshot()})

    def __len__(self) -> int:
        return len(self.snapshot())

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def validate_arguments(entry: ToolEntry, arguments: Any) -> None:
        """Raise InvalidArguments naming the most relevant violated constraint."""
        descriptor = entry.descriptor
        if not isinstance(arguments, dict):
            raise InvalidArguments(descriptor.qualified_name, "arguments must be an object")
        if entry.validator is None:
            return
        error = jsonschema.exceptions.best_match(entry.validator.iter_errors(arguments))
        if error is None:
            return
        path = "/".join(str(part) for part in error.absolute_path)
        raise InvalidArguments(
            descriptor.qualified_name,
            f"{error.validator}: {error.message}",
            path=path,
        )

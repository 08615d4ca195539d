"""
Data models describing an analyzed closure.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

# Scope of a function that was not defined inside a class body
STATIC_SCOPE = "static"

# Fields of a descriptor that travel in a serialized payload
SERIALIZED_FIELDS = (
    "code",
    "name",
    "qualname",
    "module",
    "context",
    "binding",
    "scope",
    "is_static",
    "defaults",
    "kwdefaults",
)


class ContextMarker(Enum):
    """Placeholders stored in a serialized context instead of a value"""
    RECURSION = "{{RECURSION}}"
    EXCLUDE = "{{EXCLUDE}}"


class EnvelopeState(Enum):
    """Lifecycle of a ClosureEnvelope"""
    # Caller side
    UNANALYZED = "unanalyzed"
    ANALYZED = "analyzed"
    SERIALIZED = "serialized"

    # Receiver side
    DESERIALIZED = "deserialized"
    RECONSTRUCTED = "reconstructed"
    REBOUND = "rebound"


class FunctionDescriptor(BaseModel):
    """Portable description of a function value and its captured variables."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    code: str
    name: str = "<lambda>"
    qualname: str = "<lambda>"
    module: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    binding: Optional[Any] = None
    scope: str = STATIC_SCOPE
    is_static: bool = False
    has_this: bool = False
    defaults: Optional[Tuple[Any, ...]] = None
    kwdefaults: Optional[Dict[str, Any]] = None

    def projected(self, context: Dict[str, Any]) -> "FunctionDescriptor":
        """Copy restricted to serialized fields, with the given context"""
        values = {field: getattr(self, field) for field in SERIALIZED_FIELDS}
        values["context"] = context
        if not self.has_this:
            values["binding"] = None
        return FunctionDescriptor(**values)

    def to_debug_dict(self) -> Dict[str, Any]:
        """Plain nested dict suitable for printing"""
        context = {}
        for key, value in self.context.items():
            if isinstance(value, FunctionDescriptor):
                context[key] = value.to_debug_dict()
            elif isinstance(value, ContextMarker):
                context[key] = value.value
            else:
                context[key] = value
        return {
            "code": self.code,
            "name": self.name,
            "qualname": self.qualname,
            "module": self.module,
            "context": context,
            "binding": self.binding,
            "scope": self.scope,
            "is_static": self.is_static,
            "has_this": self.has_this,
            "defaults": self.defaults,
            "kwdefaults": self.kwdefaults,
        }

"""
closurepack - Portable, signed serialization of Python closures
"""

from .config import SerializerConfig
from .core import (
    ClosureAnalyzer,
    ClosureEnvelope,
    ClosureSerializer,
    ExclusionRegistry,
    SourceAnalyzer,
    create_analyzer,
    default_registry,
)
from .errors import (
    AnalysisError,
    ClosureError,
    ReconstructionError,
    SerializationError,
    SignatureError,
)
from .schema.models import STATIC_SCOPE, ContextMarker, EnvelopeState, FunctionDescriptor

__version__ = "0.1.0"
__all__ = [
    "SerializerConfig",
    "ClosureAnalyzer",
    "ClosureEnvelope",
    "ClosureSerializer",
    "ExclusionRegistry",
    "SourceAnalyzer",
    "create_analyzer",
    "default_registry",
    "AnalysisError",
    "ClosureError",
    "ReconstructionError",
    "SerializationError",
    "SignatureError",
    "STATIC_SCOPE",
    "ContextMarker",
    "EnvelopeState",
    "FunctionDescriptor",
]

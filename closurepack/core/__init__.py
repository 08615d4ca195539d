from .analyzer import ClosureAnalyzer, SourceAnalyzer, create_analyzer, default_analyzer
from .envelope import ClosureEnvelope
from .registry import ExclusionRegistry, default_registry
from .serializer import ClosureSerializer

__all__ = [
    "ClosureAnalyzer",
    "SourceAnalyzer",
    "create_analyzer",
    "default_analyzer",
    "ClosureEnvelope",
    "ExclusionRegistry",
    "default_registry",
    "ClosureSerializer",
]

from .models import (
    STATIC_SCOPE, SERIALIZED_FIELDS, ContextMarker, EnvelopeState, FunctionDescriptor
)

__all__ = [
    "STATIC_SCOPE", "SERIALIZED_FIELDS", "ContextMarker", "EnvelopeState", "FunctionDescriptor"
]

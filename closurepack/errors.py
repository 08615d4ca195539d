"""
Exception types raised by closurepack
"""


class ClosureError(Exception):
    """Base class for all closurepack errors"""
    pass


class AnalysisError(ClosureError):
    """Raised when a function's source cannot be located or parsed"""
    pass


class SerializationError(ClosureError):
    """Raised when a closure or its context cannot be turned into bytes"""


class ReconstructionError(ClosureError):
    """Raised when serialized closure data does not yield a callable function"""


class SignatureError(ClosureError):
    """Raised when a signed payload is missing its signature or was modified"""

"""
Serializable wrapper around a closure.

A ClosureEnvelope couples one function value with its descriptor. Serializing
it analyzes the function once, projects the descriptor (nested closures become
nested descriptors, self references become RECURSION markers and registered
names become EXCLUDE markers) and encodes it. Deserializing rebuilds the
function from its source inside a generated factory whose parameters are the
captured variables, so the result is a real closure over the same values.
"""

from __future__ import annotations

import ast
import builtins
import hashlib
import importlib
import keyword
import linecache
import logging
import sys
import types
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ClosureError, ReconstructionError, SerializationError
from ..schema.models import STATIC_SCOPE, ContextMarker, EnvelopeState, FunctionDescriptor
from .analyzer import ClosureAnalyzer, default_analyzer, is_function_value, unwrap_function
from .codec import dump_descriptor, load_descriptor
from .registry import ExclusionRegistry, default_registry

log = logging.getLogger(__name__)

_FACTORY_NAME = "__closure_factory__"
_RESULT_NAME = "__reconstructed__"
_CLASS_CELL = "__class__"


class ClosureEnvelope:
    """Wraps a function value so it can be serialized with its context."""

    def __init__(
        self,
        fn: Any,
        analyzer: Optional[ClosureAnalyzer] = None,
        registry: Optional[ExclusionRegistry] = None,
    ):
        if isinstance(fn, ClosureEnvelope):
            fn = fn.function
        if not is_function_value(fn):
            raise TypeError(f"ClosureEnvelope expects a Python function, got {type(fn).__name__}")
        self._setup(fn, analyzer, registry)

    def _setup(self, fn, analyzer, registry) -> None:
        self._function = fn
        self.analyzer = analyzer or default_analyzer
        self.registry = registry if registry is not None else default_registry
        self._data: Optional[FunctionDescriptor] = None
        self._scope_override: Optional[str] = None
        self.state = EnvelopeState.UNANALYZED
        self.last_error: Optional[Exception] = None

    @property
    def function(self) -> Any:
        """The wrapped function value"""
        return self._function

    # ---------- Analysis ----------
    def get_descriptor(
        self, for_serialization: bool = False, _ancestors: Tuple[Any, ...] = ()
    ) -> FunctionDescriptor:
        """
        Analyze the wrapped function

        Args:
            for_serialization: Project the result for serialization. Binding is
                dropped unless the function uses it, only serialized fields are
                kept, and context entries holding functions are replaced with
                nested descriptors or markers. The projection is cached.

        Returns:
            FunctionDescriptor
        """
        if for_serialization and self._data is not None:
            return self._data

        data = self.analyzer.analyze(self._function)
        if self._scope_override is not None:
            data.scope = self._scope_override
        if self.state is EnvelopeState.UNANALYZED:
            self.state = EnvelopeState.ANALYZED
        if not for_serialization:
            return data

        func = unwrap_function(self._function)[0]
        ancestors = _ancestors + (func,)
        context: Dict[str, Any] = {}
        for key, value in data.context.items():
            if key in self.registry:
                context[key] = ContextMarker.EXCLUDE
                continue

            candidate = value.function if isinstance(value, ClosureEnvelope) else value
            if not is_function_value(candidate):
                context[key] = value
            elif candidate is self._function or candidate is func:
                context[key] = ContextMarker.RECURSION
            elif any(unwrap_function(candidate)[0] is seen for seen in ancestors):
                raise SerializationError(
                    f"Context variable {key!r} of {func.__qualname__} refers back to an "
                    f"enclosing closure; mutually recursive closures are not supported"
                )
            else:
                nested = value if isinstance(value, ClosureEnvelope) else ClosureEnvelope(
                    value, self.analyzer, self.registry
                )
                context[key] = nested.get_descriptor(True, _ancestors=ancestors)

        self._data = data.projected(context)
        return self._data

    def debug_info(self) -> Dict[str, Any]:
        """Returns the serialized closure data as a plain dict for dumping"""
        return self.get_descriptor(for_serialization=True).to_debug_dict()

    # ---------- Serialization ----------
    def to_bytes(self, protocol: Optional[int] = None) -> Optional[bytes]:
        """
        Serializes the code, context, and binding of the closure.

        Never raises: on failure a warning is logged, the exception is kept on
        `last_error` and None is returned.
        """
        try:
            payload = dump_descriptor(self.get_descriptor(for_serialization=True), protocol)
        except Exception as e:
            self.last_error = e
            log.warning("Serialization of closure failed: %s", e)
            return None

        self.state = EnvelopeState.SERIALIZED
        return payload

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        analyzer: Optional[ClosureAnalyzer] = None,
        registry: Optional[ExclusionRegistry] = None,
    ) -> "ClosureEnvelope":
        """Rebuild an envelope from bytes produced by to_bytes"""
        return cls.from_descriptor(load_descriptor(data), analyzer, registry)

    @classmethod
    def from_descriptor(
        cls,
        descriptor: FunctionDescriptor,
        analyzer: Optional[ClosureAnalyzer] = None,
        registry: Optional[ExclusionRegistry] = None,
    ) -> "ClosureEnvelope":
        """Rebuild an envelope from a projected descriptor"""
        envelope = cls.__new__(cls)
        envelope._setup(None, analyzer, registry)
        envelope._data = descriptor
        envelope.state = EnvelopeState.DESERIALIZED
        envelope._reconstruct_closure()
        return envelope

    def _reconstruct_closure(self) -> None:
        fn, bound = reconstruct(self._data, self.registry)
        self._function = fn
        self.state = EnvelopeState.REBOUND if bound else EnvelopeState.RECONSTRUCTED

    def __reduce__(self):
        return (_restore_envelope, (self.get_descriptor(for_serialization=True),))

    # ---------- Invocation and binding ----------
    def invoke(self, *args, **kwargs) -> Any:
        """
        Delegates the call to the wrapped function.

        Arguments are passed as in any Python call: mutating an argument is
        visible to the caller, rebinding a parameter name is not.
        """
        return self._function(*args, **kwargs)

    __call__ = invoke

    def rebind(self, new_binding: Any, new_scope: Any = STATIC_SCOPE) -> "ClosureEnvelope":
        """
        Return a new envelope with the function bound to another object

        Args:
            new_binding: Object the function is bound to, or None for unbound
            new_scope: Class (or instance of it, or class name) whose private
                names the function resolves on reconstruction, "static" to
                keep the current scope, or None for no class scope

        Returns:
            ClosureEnvelope; this envelope is left unchanged
        """
        func, _, _, is_static = unwrap_function(self._function)
        if is_static and new_binding is not None:
            raise ClosureError("Cannot bind an instance to a static closure")

        if is_static:
            fn = self._function
        elif new_binding is not None:
            fn = types.MethodType(func, new_binding)
        else:
            fn = func

        envelope = ClosureEnvelope(fn, self.analyzer, self.registry)
        if new_scope is None:
            envelope._scope_override = STATIC_SCOPE
        elif isinstance(new_scope, str):
            envelope._scope_override = (
                self._scope_override if new_scope == STATIC_SCOPE else new_scope
            )
        elif isinstance(new_scope, type):
            envelope._scope_override = new_scope.__name__
        else:
            envelope._scope_override = type(new_scope).__name__
        envelope.state = EnvelopeState.REBOUND
        return envelope

    def __repr__(self) -> str:
        name = getattr(self._function, "__qualname__", None)
        if name is None and self._data is not None:
            name = self._data.qualname
        return f"ClosureEnvelope({name}, state={self.state.value})"


def _restore_envelope(descriptor: FunctionDescriptor) -> ClosureEnvelope:
    return ClosureEnvelope.from_descriptor(descriptor)


# ---------- Reconstruction ----------
def reconstruct(descriptor: FunctionDescriptor, registry: ExclusionRegistry) -> Tuple[Any, bool]:
    """
    Recreate the function value described by a projected descriptor

    Returns:
        (function value, whether it was bound to descriptor.binding)

    Raises:
        ReconstructionError: if the code does not yield a function or an
            excluded variable is not registered
    """
    values, slots = _resolve_context(descriptor, registry)
    func = _evaluate(descriptor, values, slots)

    if _CLASS_CELL in values and _CLASS_CELL in func.__code__.co_freevars:
        cell = func.__closure__[func.__code__.co_freevars.index(_CLASS_CELL)]
        cell.cell_contents = values[_CLASS_CELL]

    func.__qualname__ = descriptor.qualname
    if descriptor.module:
        func.__module__ = descriptor.module
    func.__defaults__ = descriptor.defaults
    func.__kwdefaults__ = dict(descriptor.kwdefaults) if descriptor.kwdefaults else None

    # Rebind the closure to its former binding, if it's not static
    if descriptor.is_static:
        return staticmethod(func), False
    if descriptor.binding is not None:
        return types.MethodType(func, descriptor.binding), True
    return func, False


def _resolve_context(
    descriptor: FunctionDescriptor, registry: ExclusionRegistry
) -> Tuple[Dict[str, Any], List[str]]:
    values: Dict[str, Any] = {}
    slots: List[str] = []
    for key, value in descriptor.context.items():
        if not key.isidentifier() or keyword.iskeyword(key):
            raise ReconstructionError(f"Invalid context variable name {key!r}")

        if value is ContextMarker.EXCLUDE:
            if key not in registry:
                raise ReconstructionError(
                    f"No value registered for excluded context variable {key!r}"
                )
            values[key] = registry.get(key)
        elif value is ContextMarker.RECURSION:
            slots.append(key)
        elif isinstance(value, FunctionDescriptor):
            values[key] = reconstruct(value, registry)[0]
        else:
            values[key] = value
    return values, slots


def _definition(descriptor: FunctionDescriptor) -> List[ast.stmt]:
    # Statements binding the function to _RESULT_NAME
    try:
        parsed = ast.parse(descriptor.code)
    except SyntaxError as e:
        raise ReconstructionError(
            f"The closure is corrupted and cannot be unserialized: {e}"
        ) from e

    result = ast.Name(id=_RESULT_NAME, ctx=ast.Store())
    if len(parsed.body) == 1:
        node = parsed.body[0]
        if isinstance(node, ast.Expr) and isinstance(node.value, ast.Lambda):
            return [ast.Assign(targets=[result], value=node.value)]
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == descriptor.name:
            return [node, ast.Assign(targets=[result], value=ast.Name(id=node.name, ctx=ast.Load()))]

    raise ReconstructionError(
        "The closure is corrupted and cannot be unserialized: "
        "its code does not define a function"
    )


def _class_block_name(scope: str) -> Optional[str]:
    # Leading underscores keep the name clear of captured variables without
    # changing how private names are mangled inside the block.
    if scope == STATIC_SCOPE or not scope.isidentifier():
        return None
    return "___" + scope


def _factory_source(
    descriptor: FunctionDescriptor, params: List[str], slots: List[str]
) -> str:
    class_name = _class_block_name(descriptor.scope)
    lines = [f"def {_FACTORY_NAME}({', '.join(params)}):"]
    lines += [f"    {slot} = None" for slot in slots]
    if class_name:
        lines += [
            f"    class {class_name}:",
            "        pass",
            f"    {_RESULT_NAME} = {class_name}.__dict__[{_RESULT_NAME!r}]",
        ]
    else:
        lines += ["    pass"]
    lines += [f"    {slot} = {_RESULT_NAME}" for slot in slots]
    lines += [f"    return {_RESULT_NAME}"]

    module = ast.parse("\n".join(lines))
    factory = module.body[0]
    position = len(slots)
    if class_name:
        factory.body[position].body = _definition(descriptor)
    else:
        factory.body[position:position + 1] = _definition(descriptor)
    ast.fix_missing_locations(module)
    return ast.unparse(module) + "\n"


def _register_source(source: str) -> str:
    # Makes the generated source visible to inspect and tracebacks, and to
    # the analyzer when the function is serialized again.
    digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:16]
    filename = f"<closurepack {digest}>"
    linecache.cache[filename] = (len(source), None, source.splitlines(True), filename)
    return filename


def _module_globals(module_name: Optional[str]) -> Dict[str, Any]:
    if module_name:
        module = sys.modules.get(module_name)
        if module is None:
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                log.debug("Module %s not importable, using a bare namespace: %s", module_name, e)
        if module is not None:
            return vars(module)
    return {"__builtins__": builtins, "__name__": module_name or "__closurepack__"}


def _evaluate(
    descriptor: FunctionDescriptor, values: Dict[str, Any], slots: List[str]
) -> types.FunctionType:
    params = [key for key in values if key != _CLASS_CELL]
    source = _factory_source(descriptor, params, slots)
    filename = _register_source(source)

    try:
        module_code = compile(source, filename, "exec")
    except SyntaxError as e:
        raise ReconstructionError(
            f"The closure is corrupted and cannot be unserialized: {e}"
        ) from e

    factory_code = next(
        const for const in module_code.co_consts
        if isinstance(const, types.CodeType) and const.co_name == _FACTORY_NAME
    )
    factory = types.FunctionType(factory_code, _module_globals(descriptor.module), _FACTORY_NAME)

    try:
        func = factory(**{key: values[key] for key in params})
    except Exception as e:
        raise ReconstructionError(
            f"The closure is corrupted and cannot be unserialized: {e}"
        ) from e

    if not isinstance(func, types.FunctionType):
        raise ReconstructionError("The closure is corrupted and cannot be unserialized.")
    return func

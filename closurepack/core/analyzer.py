"""
Closure analysis: portable source code and captured variables of a function
"""

from __future__ import annotations

import ast
import copy
import dis
import functools
import hashlib
import inspect
import linecache
import logging
import types
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Set, Tuple

from ..errors import AnalysisError
from ..schema.models import STATIC_SCOPE, FunctionDescriptor

log = logging.getLogger(__name__)

_DEF_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)


class ClosureAnalyzer(ABC):
    """Abstract base class for closure analyzers"""

    @abstractmethod
    def analyze(self, fn: Any) -> FunctionDescriptor:
        """
        Extract a descriptor from a function value

        Args:
            fn: Plain function, bound method or staticmethod

        Returns:
            FunctionDescriptor holding code, context, binding and scope

        Raises:
            AnalysisError: if the function's source cannot be located or parsed
        """
        pass


def unwrap_function(fn: Any) -> Tuple[types.FunctionType, Any, bool, bool]:
    """Split a function value into (function, binding, has_this, is_static)"""
    if isinstance(fn, staticmethod):
        func, binding, has_this, is_static = fn.__func__, None, False, True
    elif isinstance(fn, types.MethodType):
        func, binding, has_this, is_static = fn.__func__, fn.__self__, True, False
    else:
        func, binding, has_this, is_static = fn, None, False, False

    if not isinstance(func, types.FunctionType):
        raise AnalysisError(f"Cannot analyze {fn!r}: not a Python function")
    return func, binding, has_this, is_static


def is_function_value(value: Any) -> bool:
    """True for values the analyzer accepts"""
    if isinstance(value, (staticmethod, types.MethodType)):
        return isinstance(value.__func__, types.FunctionType)
    return isinstance(value, types.FunctionType)


def scope_from_qualname(qualname: str) -> str:
    """Innermost class enclosing a definition, or STATIC_SCOPE"""
    parts = qualname.split(".")
    scope = STATIC_SCOPE
    for part, following in zip(parts, parts[1:]):
        if part != "<locals>" and following != "<locals>":
            scope = part
    return scope


def mangle(name: str, scope: str) -> str:
    """Apply private name mangling as the compiler does inside class `scope`"""
    if scope == STATIC_SCOPE or not name.startswith("__") or name.endswith("__"):
        return name
    owner = scope.lstrip("_")
    if not owner:
        return name
    return f"_{owner}{name}"


def fingerprint(func: types.FunctionType) -> str:
    """Stable key for a function's exact definition"""
    code = func.__code__
    consts = [const for const in code.co_consts if not isinstance(const, types.CodeType)]
    location = "\0".join(
        [
            code.co_filename,
            str(code.co_firstlineno),
            func.__qualname__,
            code.co_name,
            ",".join(code.co_freevars),
            ",".join(code.co_names),
            repr(consts),
        ]
    )
    # Columns tell apart definitions sharing a line
    if hasattr(code, "co_positions"):
        location += "\0" + repr(list(code.co_positions()))
    return hashlib.sha256(location.encode("utf-8") + code.co_code).hexdigest()


@functools.lru_cache(maxsize=64)
def _parse_source(text: str, filename: str) -> ast.Module:
    return ast.parse(text, filename)


def _code_arg_names(code: types.CodeType) -> List[str]:
    count = code.co_argcount + code.co_kwonlyargcount
    if code.co_flags & inspect.CO_VARARGS:
        count += 1
    if code.co_flags & inspect.CO_VARKEYWORDS:
        count += 1
    return list(code.co_varnames[:count])


def _node_arg_names(args: ast.arguments, scope: str) -> List[str]:
    names = [a.arg for a in args.posonlyargs + args.args + args.kwonlyargs]
    if args.vararg:
        names.append(args.vararg.arg)
    if args.kwarg:
        names.append(args.kwarg.arg)
    return [mangle(name, scope) for name in names]


_COMPREHENSIONS = ("<listcomp>", "<setcomp>", "<dictcomp>", "<genexpr>")
_SCOPE_NODES = (ast.Lambda, ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


def _nested_code_count(code: types.CodeType) -> int:
    # Functions and classes created directly by this code; comprehensions
    # get their own code object on some versions and are looked through
    count = 0
    for const in code.co_consts:
        if not isinstance(const, types.CodeType):
            continue
        if const.co_name in _COMPREHENSIONS:
            count += _nested_code_count(const)
        else:
            count += 1
    return count


def _nested_node_count(node: ast.AST) -> int:
    # Only the body runs inside the function; defaults and decorators do not
    body = node.body if isinstance(node.body, list) else [node.body]
    count = 0
    pending = list(body)
    while pending:
        child = pending.pop()
        if isinstance(child, _SCOPE_NODES):
            count += 1
            continue
        pending.extend(ast.iter_child_nodes(child))
    return count


def _position_score(node: ast.AST, code: types.CodeType) -> int:
    # Instructions whose source position falls inside the node
    start = (node.lineno, node.col_offset)
    end = (node.end_lineno, node.end_col_offset)
    score = 0
    for line, _, col, _ in code.co_positions():
        if line is None or col is None:
            continue
        if start <= (line, col) < end:
            score += 1
    return score


def _code_symbols(code: types.CodeType) -> Tuple[Set[str], Set[Any]]:
    names = set(code.co_names) | set(code.co_varnames) | set(code.co_freevars)
    consts: Set[Any] = set()
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            inner_names, inner_consts = _code_symbols(const)
            names |= inner_names
            consts |= inner_consts
        elif isinstance(const, (str, bytes, int, float, complex)):
            consts.add(const)
    return names, consts


def _symbol_score(node: ast.AST, code: types.CodeType) -> int:
    names, consts = _code_symbols(code)
    score = 0
    for child in ast.walk(node):
        if isinstance(child, ast.Name):
            score += 1 if child.id in names else -1
        elif isinstance(child, ast.Attribute):
            score += 1 if child.attr in names else -1
        elif isinstance(child, ast.Constant) and isinstance(
            child.value, (str, bytes, int, float, complex)
        ):
            score += 1 if child.value in consts else 0
    return score


def _global_names(code: types.CodeType) -> Tuple[List[str], Set[str]]:
    loaded: List[str] = []
    stored: Set[str] = set()
    for instruction in dis.get_instructions(code):
        if instruction.opname == "LOAD_GLOBAL" and instruction.argval not in loaded:
            loaded.append(instruction.argval)
        elif instruction.opname in ("STORE_GLOBAL", "DELETE_GLOBAL"):
            stored.add(instruction.argval)
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            inner_loaded, inner_stored = _global_names(const)
            loaded.extend(name for name in inner_loaded if name not in loaded)
            stored |= inner_stored
    return loaded, stored


class SourceAnalyzer(ClosureAnalyzer):
    """Analyzer that recovers a function's definition from its source file

    The definition is located in the parsed source by kind, name, first line
    and parameter names, then rewritten without decorators, annotations and
    default expressions. Context is read from the function's closure cells.
    """

    def __init__(self, capture_globals: bool = False):
        self.capture_globals = capture_globals
        self._cache: Dict[str, str] = {}

    def analyze(self, fn: Any) -> FunctionDescriptor:
        func, binding, has_this, is_static = unwrap_function(fn)
        scope = scope_from_qualname(func.__qualname__)

        return FunctionDescriptor(
            code=self.portable_code(func, scope),
            name=func.__name__,
            qualname=func.__qualname__,
            module=func.__module__,
            context=self.capture_context(func),
            binding=binding,
            scope=scope,
            is_static=is_static,
            has_this=has_this,
            defaults=func.__defaults__,
            kwdefaults=dict(func.__kwdefaults__) if func.__kwdefaults__ else None,
        )

    # ---------- Code ----------
    def portable_code(self, func: types.FunctionType, scope: str) -> str:
        key = fingerprint(func)
        cached = self._cache.get(key)
        if cached is not None:
            log.debug("Analysis cache hit for %s", func.__qualname__)
            return cached

        node = self._locate(func, scope)
        source = self._rewrite(node)
        self._cache[key] = source
        return source

    def clear_cache(self) -> None:
        self._cache.clear()

    def _locate(self, func: types.FunctionType, scope: str) -> ast.AST:
        code = func.__code__
        lines = linecache.getlines(code.co_filename, func.__globals__)
        if not lines:
            raise AnalysisError(
                f"Source of {func.__qualname__} is not available "
                f"(defined in {code.co_filename!r})"
            )
        try:
            tree = _parse_source("".join(lines), code.co_filename)
        except SyntaxError as e:
            raise AnalysisError(
                f"Source of {func.__qualname__} cannot be parsed: {e}"
            ) from e

        candidates = list(self._candidates(tree, code, scope))
        if len(candidates) > 1:
            candidates = self._break_tie(candidates, code)
        if not candidates:
            raise AnalysisError(
                f"Definition of {func.__qualname__} not found in "
                f"{code.co_filename}:{code.co_firstlineno}"
            )
        if len(candidates) > 1:
            raise AnalysisError(
                f"Definition of {func.__qualname__} is ambiguous at "
                f"{code.co_filename}:{code.co_firstlineno}"
            )
        return candidates[0]

    @staticmethod
    def _candidates(tree: ast.AST, code: types.CodeType, scope: str) -> Iterable[ast.AST]:
        is_lambda = code.co_name == "<lambda>"
        arg_names = _code_arg_names(code)
        for node in ast.walk(tree):
            if is_lambda and isinstance(node, ast.Lambda):
                first_lines = {node.lineno}
            elif not is_lambda and isinstance(node, _DEF_NODES) and node.name == code.co_name:
                first_lines = {node.lineno}
                if node.decorator_list:
                    first_lines.add(node.decorator_list[0].lineno)
            else:
                continue
            if code.co_firstlineno not in first_lines:
                continue
            if arg_names in (
                _node_arg_names(node.args, scope),
                _node_arg_names(node.args, STATIC_SCOPE),
            ):
                yield node

    @staticmethod
    def _break_tie(candidates: List[ast.AST], code: types.CodeType) -> List[ast.AST]:
        # Nested definitions on one line share positions with their parent
        nested = _nested_code_count(code)
        matching = [node for node in candidates if _nested_node_count(node) == nested]
        if len(matching) == 1:
            return matching
        if matching:
            candidates = matching

        if hasattr(code, "co_positions"):
            scorer = _position_score
        else:
            scorer = _symbol_score
        scores = [scorer(node, code) for node in candidates]
        best = max(scores)
        return [node for node, score in zip(candidates, scores) if score == best]

    @staticmethod
    def _rewrite(node: ast.AST) -> str:
        node = copy.deepcopy(node)
        args = node.args
        # Default values are carried by the descriptor
        args.defaults = [ast.Constant(value=None) for _ in args.defaults]
        args.kw_defaults = [
            None if default is None else ast.Constant(value=None)
            for default in args.kw_defaults
        ]
        if isinstance(node, _DEF_NODES):
            node.decorator_list = []
            node.returns = None
            if hasattr(node, "type_params"):
                node.type_params = []
            for arg in args.posonlyargs + args.args + args.kwonlyargs:
                arg.annotation = None
            if args.vararg:
                args.vararg.annotation = None
            if args.kwarg:
                args.kwarg.annotation = None
        ast.fix_missing_locations(node)
        return ast.unparse(node)

    # ---------- Context ----------
    def capture_context(self, func: types.FunctionType) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        cells = func.__closure__ or ()
        for name, cell in zip(func.__code__.co_freevars, cells):
            try:
                context[name] = cell.cell_contents
            except ValueError:
                raise AnalysisError(
                    f"Captured variable {name!r} of {func.__qualname__} is not bound"
                ) from None

        if self.capture_globals:
            loaded, stored = _global_names(func.__code__)
            for name in loaded:
                if name in context or name in stored or name not in func.__globals__:
                    continue
                value = func.__globals__[name]
                if isinstance(value, types.ModuleType):
                    continue
                context[name] = value
        return context


def create_analyzer(kind: str = "source", **options) -> ClosureAnalyzer:
    """
    Factory function to create analyzer instances

    Args:
        kind: Type of analyzer ("source")
        **options: Keyword arguments for the analyzer constructor

    Returns:
        ClosureAnalyzer instance
    """
    analyzers = {
        "source": SourceAnalyzer,
    }

    analyzer_class = analyzers.get(kind.lower())
    if not analyzer_class:
        raise ValueError(f"Unknown analyzer type: {kind}")

    return analyzer_class(**options)


# Shared by envelopes and serializers created without an explicit analyzer
default_analyzer = SourceAnalyzer()

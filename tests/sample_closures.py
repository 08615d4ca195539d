"""
Closures used by the test suite. Kept outside test modules so their source
is exactly what is on disk.
"""

import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List

GREETING = "hi"
REGISTERED: List[Callable] = []


def register(fn):
    REGISTERED.append(fn)
    return fn


def make_greeter():
    x = 1
    y = "a"
    return lambda name: f"{y}{x}{name}"


def make_factorial():
    def fact(n):
        return 1 if n <= 1 else n * fact(n - 1)
    return fact


def make_pipeline(offset=10):
    def add(v):
        return v + offset

    def run(v):
        return add(v) * 2
    return run


def make_even_odd():
    def is_even(n):
        return True if n == 0 else is_odd(n - 1)

    def is_odd(n):
        return False if n == 0 else is_even(n - 1)
    return is_even


def make_adder_with_default():
    k = 3
    return lambda x, y=k: x + y


def make_scaler(base):
    @register
    def scaled(value: float, *, factor: int = 2) -> float:
        """Scale value by factor and base."""
        return value * factor * base
    return scaled


def make_hypot(unit):
    return lambda a, b: f"{math.hypot(a, b)}{unit}"


def make_pair():
    return (lambda v: v + 1, lambda v: v * 2)


def make_labels():
    return (lambda: "first", lambda: "second")


def make_getters():
    x, y = "x", "y"
    return (lambda: x, lambda: y)


def make_thunk_factory():
    return lambda: lambda: 42


def make_counter():
    count = 0

    def bump(step=1):
        nonlocal count
        count += step
        return count
    return bump


def greet(name):
    return f"{GREETING} {name}"


def module_fact(n):
    return 1 if n <= 1 else n * module_fact(n - 1)


class Connection:
    """Stands in for a live resource: holds a lock, so it cannot be pickled."""

    def __init__(self, dsn):
        self.dsn = dsn
        self._lock = threading.Lock()

    def query(self, sql):
        return f"{self.dsn}:{sql}"


def make_query(conn):
    return lambda sql: conn.query(sql)


class Account:
    def __init__(self, owner):
        self.owner = owner

    def describe(self, prefix):
        return f"{prefix}{self.owner}"


class MathUtil:
    @staticmethod
    def double(x):
        return x * 2


class Vault:
    def __init__(self, secret):
        self.__secret = secret

    def reveal(self):
        return self.__secret


class Base:
    def label(self):
        return "base"


class Child(Base):
    def label(self):
        return "child+" + super().label()


@dataclass
class Job:
    name: str
    callback: Any
    steps: list = field(default_factory=list)


class Frozen:
    """Defines its own pickling hook, so deep wrapping leaves it alone."""

    def __init__(self, fn):
        self.fn = fn

    def __reduce__(self):
        return (Frozen, (self.fn,))


class HandlerSet:
    """Opts into deep wrapping through __wrap_closures__."""

    def __init__(self, *handlers):
        self.handlers = list(handlers)

    def __wrap_closures__(self, wrap):
        self.handlers = [wrap(handler) for handler in self.handlers]

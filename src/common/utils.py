"""Common utility functions."""

from typing import Callable, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def first_non_null(strategies: Iterable[Callable[[T], R | None]], value: T) -> R | None:
    """Apply each strategy to value in order and return the first non-None result."""
    for strategy in strategies:
        result = strategy(value)
        if result is not None:
            return result
    return None

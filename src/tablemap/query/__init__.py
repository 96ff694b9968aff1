"""Composed query expression trees."""

from .ast import OPTION_METHODS, TableTerm, Term, expr, func, r

__all__ = [
    "OPTION_METHODS",
    "TableTerm",
    "Term",
    "expr",
    "func",
    "r",
]

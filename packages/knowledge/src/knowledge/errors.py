"""
knowledge/errors.py - Error taxonomy for the formula store

Every failure raised by this package derives from KnowledgeError:

- MalformedTermError: structurally invalid term (negative arity, bad box value)
- SchemaViolationError: formula or collection rejected by a schema
- UnboundVariableError: a ground result needed a variable the map lacked
- VariableAlreadyBoundError: bind() targeted a variable already in the row
- ExpressionError: type error inside a filter/bind expression
- InvalidStateError: mutation of a read-only collection, wrong collection kind
- ReasoningDivergentError: closure computation exceeded its bound
- AggregateDisposalError: several errors while disposing a combined scope
"""
from __future__ import annotations

from typing import Any


class KnowledgeError(Exception):
    """Base class for all formula store errors."""


class MalformedTermError(KnowledgeError, ValueError):
    """A term could not be constructed."""

    def __init__(self, message: str, term: Any = None):
        super().__init__(message)
        self.term = term


class SchemaViolationError(KnowledgeError):
    """A formula or collection failed schema validation."""

    def __init__(self, message: str, formula: Any = None):
        super().__init__(message)
        self.formula = formula


class UnboundVariableError(KnowledgeError):
    """A variable required for a result has no binding."""

    def __init__(self, message: str, variable: Any = None):
        super().__init__(message)
        self.variable = variable


class VariableAlreadyBoundError(UnboundVariableError):
    """bind() was asked to assign a variable that is already bound in the row."""


class ExpressionError(KnowledgeError):
    """Type error or unbound reference while evaluating a filter/bind expression.

    Filters treat it as false; bind leaves the target unbound.
    """


class InvalidStateError(KnowledgeError, RuntimeError):
    """Operation not permitted on this kind of collection."""


class ReasoningDivergentError(KnowledgeError):
    """Closure computation exceeded the configured bound."""

    def __init__(self, message: str, iterations: int = 0, derived: int = 0):
        super().__init__(message)
        self.iterations = iterations
        self.derived = derived


class AggregateDisposalError(KnowledgeError):
    """One or more errors occurred while disposing a combined scope."""

    def __init__(self, errors: list[BaseException]):
        super().__init__(f"{len(errors)} error(s) during disposal: " + "; ".join(repr(e) for e in errors))
        self.errors = list(errors)

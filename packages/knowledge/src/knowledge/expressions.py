"""
knowledge/expressions.py - Expression language for filter, bind, order and having

Expressions evaluate against one result row and produce a Term. They are
built with ordinary Python operators:

    x, age = var("x"), var("age")
    (age >= 18) & ~bound(var("guardian"))
    str_(x) + "!"            # string concatenation via concat()
    if_(age > 65, "senior", "adult")

Plain callables taking the row (a dict Variable -> Term) are accepted
wherever an expression is; non-Term results are boxed.

Aggregates (count, sum_, min_, max_, avg, sample, group_concat) reduce the
rows of one group to a Term.
"""
from __future__ import annotations

import operator
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import ExpressionError, MalformedTermError
from .terms import Blank, Box, BoxType, Term, Uri, Variable, as_term, box, literal

Row = Mapping[Variable, Term]

TRUE = Box(BoxType.BOOLEAN, True)
FALSE = Box(BoxType.BOOLEAN, False)


def _boolean(value: bool) -> Box:
    return TRUE if value else FALSE


def effective_boolean(term: Term) -> bool:
    """Effective boolean value of a term.

    Raises:
        ExpressionError: the term has no boolean interpretation
    """
    if isinstance(term, Box):
        if term.box_type is BoxType.BOOLEAN:
            return term.value
        if term.box_type.is_numeric:
            return term.value != 0
        if term.box_type in (BoxType.STRING, BoxType.LITERAL):
            return bool(term.value)
    raise ExpressionError(f"no boolean value for {term!r}")


def _number(term: Term):
    if isinstance(term, Box) and term.box_type.is_numeric:
        return term.value
    raise ExpressionError(f"not a number: {term!r}")


def _numeric_result(value, left: Box, right: Box) -> Box:
    kinds = {left.box_type, right.box_type}
    if kinds & {BoxType.FLOAT32, BoxType.FLOAT64}:
        return Box(BoxType.FLOAT64, float(value))
    if BoxType.DECIMAL in kinds or isinstance(value, Decimal):
        return Box(BoxType.DECIMAL, value)
    return box(int(value))


class Expr(ABC):
    """Expression node."""

    @abstractmethod
    def evaluate(self, row: Row) -> Term:
        """Evaluate against a row.

        Raises:
            ExpressionError: unbound reference or type error
        """

    # Arithmetic
    def __add__(self, other: Any) -> Expr:
        return Arithmetic("+", self, as_expression(other))

    def __radd__(self, other: Any) -> Expr:
        return Arithmetic("+", as_expression(other), self)

    def __sub__(self, other: Any) -> Expr:
        return Arithmetic("-", self, as_expression(other))

    def __rsub__(self, other: Any) -> Expr:
        return Arithmetic("-", as_expression(other), self)

    def __mul__(self, other: Any) -> Expr:
        return Arithmetic("*", self, as_expression(other))

    def __rmul__(self, other: Any) -> Expr:
        return Arithmetic("*", as_expression(other), self)

    def __truediv__(self, other: Any) -> Expr:
        return Arithmetic("/", self, as_expression(other))

    def __rtruediv__(self, other: Any) -> Expr:
        return Arithmetic("/", as_expression(other), self)

    # Comparison (== and != stay structural; use eq()/ne())
    def __lt__(self, other: Any) -> Expr:
        return Comparison("<", self, as_expression(other))

    def __le__(self, other: Any) -> Expr:
        return Comparison("<=", self, as_expression(other))

    def __gt__(self, other: Any) -> Expr:
        return Comparison(">", self, as_expression(other))

    def __ge__(self, other: Any) -> Expr:
        return Comparison(">=", self, as_expression(other))

    def eq(self, other: Any) -> Expr:
        return Comparison("=", self, as_expression(other))

    def ne(self, other: Any) -> Expr:
        return Comparison("!=", self, as_expression(other))

    # Logic
    def __and__(self, other: Any) -> Expr:
        return And(self, as_expression(other))

    def __or__(self, other: Any) -> Expr:
        return Or(self, as_expression(other))

    def __invert__(self) -> Expr:
        return Not(self)


@dataclass(frozen=True, eq=False)
class Const(Expr):
    term: Term

    def evaluate(self, row: Row) -> Term:
        return self.term

    def __repr__(self) -> str:
        return repr(self.term)


@dataclass(frozen=True, eq=False)
class Ref(Expr):
    variable: Variable

    def evaluate(self, row: Row) -> Term:
        value = row.get(self.variable)
        if value is None:
            raise ExpressionError(f"{self.variable!r} is unbound")
        return value

    def __repr__(self) -> str:
        return repr(self.variable)


_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
}


@dataclass(frozen=True, eq=False)
class Arithmetic(Expr):
    op: str
    left: Expr
    right: Expr

    def evaluate(self, row: Row) -> Term:
        left = self.left.evaluate(row)
        right = self.right.evaluate(row)
        a, b = _number(left), _number(right)
        if isinstance(a, Decimal) != isinstance(b, Decimal) and not (isinstance(a, float) or isinstance(b, float)):
            a, b = Decimal(a), Decimal(b)
        elif isinstance(a, float) or isinstance(b, float):
            a, b = float(a), float(b)
        if self.op == "/":
            if b == 0:
                raise ExpressionError("division by zero")
            if isinstance(a, int) and isinstance(b, int):
                try:
                    return Box(BoxType.DECIMAL, Decimal(a) / Decimal(b))
                except InvalidOperation as e:
                    raise ExpressionError(str(e)) from e
            return _numeric_result(a / b, left, right)
        return _numeric_result(_ARITHMETIC[self.op](a, b), left, right)

    def __repr__(self) -> str:
        return f"({self.left!r} {self.op} {self.right!r})"


def _comparable(term: Term):
    if isinstance(term, Box):
        if term.box_type.is_numeric:
            return ("number", term.value)
        if term.box_type in (BoxType.STRING, BoxType.LITERAL):
            return ("string", term.value)
        if term.box_type is BoxType.DATETIME:
            return ("datetime", term.value)
        if term.box_type is BoxType.BOOLEAN:
            return ("boolean", term.value)
    return None


@dataclass(frozen=True, eq=False)
class Comparison(Expr):
    op: str
    left: Expr
    right: Expr

    def evaluate(self, row: Row) -> Term:
        left = self.left.evaluate(row)
        right = self.right.evaluate(row)
        a, b = _comparable(left), _comparable(right)

        if self.op in ("=", "!="):
            if a is not None and b is not None and a[0] == b[0]:
                equal = a[1] == b[1]
            else:
                equal = left == right
            return _boolean(equal if self.op == "=" else not equal)

        if a is None or b is None or a[0] != b[0]:
            raise ExpressionError(f"cannot order {left!r} and {right!r}")
        try:
            result = {
                "<": operator.lt,
                "<=": operator.le,
                ">": operator.gt,
                ">=": operator.ge,
            }[self.op](a[1], b[1])
        except TypeError as e:
            raise ExpressionError(str(e)) from e
        return _boolean(result)

    def __repr__(self) -> str:
        return f"({self.left!r} {self.op} {self.right!r})"


@dataclass(frozen=True, eq=False)
class And(Expr):
    left: Expr
    right: Expr

    def evaluate(self, row: Row) -> Term:
        # false && error = false, error && false = false
        try:
            left = effective_boolean(self.left.evaluate(row))
        except ExpressionError:
            if not effective_boolean(self.right.evaluate(row)):
                return FALSE
            raise
        if not left:
            return FALSE
        return _boolean(effective_boolean(self.right.evaluate(row)))


@dataclass(frozen=True, eq=False)
class Or(Expr):
    left: Expr
    right: Expr

    def evaluate(self, row: Row) -> Term:
        # true || error = true, error || true = true
        try:
            left = effective_boolean(self.left.evaluate(row))
        except ExpressionError:
            if effective_boolean(self.right.evaluate(row)):
                return TRUE
            raise
        if left:
            return TRUE
        return _boolean(effective_boolean(self.right.evaluate(row)))


@dataclass(frozen=True, eq=False)
class Not(Expr):
    inner: Expr

    def evaluate(self, row: Row) -> Term:
        return _boolean(not effective_boolean(self.inner.evaluate(row)))


@dataclass(frozen=True, eq=False)
class Call(Expr):
    """Named function over evaluated arguments."""

    name: str
    function: Callable[..., Term]
    arguments: tuple[Expr, ...]

    def evaluate(self, row: Row) -> Term:
        return self.function(*(a.evaluate(row) for a in self.arguments))

    def __repr__(self) -> str:
        return f"{self.name}({', '.join(repr(a) for a in self.arguments)})"


@dataclass(frozen=True, eq=False)
class RowFunction(Expr):
    """Wraps a plain callable taking the whole row."""

    function: Callable[[Row], Any]

    def evaluate(self, row: Row) -> Term:
        try:
            result = self.function(row)
        except ExpressionError:
            raise
        except KeyError as e:
            raise ExpressionError(f"unbound reference {e}") from e
        except Exception as e:
            raise ExpressionError(f"{self.function!r} failed: {e}") from e
        if result is None:
            raise ExpressionError(f"{self.function!r} returned no value")
        try:
            return as_term(result)
        except MalformedTermError as e:
            raise ExpressionError(f"{self.function!r} returned {result!r}: {e}") from e


def as_expression(value: Any) -> Expr:
    """Coerce Variables, Terms, Python scalars and callables to expressions."""
    if isinstance(value, Expr):
        return value
    if isinstance(value, Variable):
        return Ref(value)
    if isinstance(value, Term):
        return Const(value)
    if callable(value):
        return RowFunction(value)
    return Const(as_term(value))


def var(name: str) -> Ref:
    return Ref(Variable(name.lstrip("?")))


# =============================================================================
# FUNCTIONS
# =============================================================================


@dataclass(frozen=True, eq=False)
class _Bound(Expr):
    variable: Variable

    def evaluate(self, row: Row) -> Term:
        return _boolean(self.variable in row)


def bound(variable: Variable | Ref) -> Expr:
    """True if the variable has a value in the row."""
    return _Bound(variable.variable if isinstance(variable, Ref) else variable)


@dataclass(frozen=True, eq=False)
class _If(Expr):
    condition: Expr
    then: Expr
    otherwise: Expr

    def evaluate(self, row: Row) -> Term:
        if effective_boolean(self.condition.evaluate(row)):
            return self.then.evaluate(row)
        return self.otherwise.evaluate(row)


def if_(condition: Any, then: Any, otherwise: Any) -> Expr:
    return _If(as_expression(condition), as_expression(then), as_expression(otherwise))


def _lexical(term: Term) -> str:
    if isinstance(term, Uri):
        return term.value
    if isinstance(term, Box) and term.box_type in (BoxType.STRING, BoxType.LITERAL):
        return term.value
    if isinstance(term, Box) and term.box_type is not BoxType.FORMULAS:
        return repr(term)
    raise ExpressionError(f"no lexical form for {term!r}")


def str_(value: Any) -> Expr:
    """Lexical form of a Uri or scalar as a string."""
    return Call("str", lambda t: box(_lexical(t)), (as_expression(value),))


def lang(value: Any) -> Expr:
    def _lang(t: Term) -> Term:
        if isinstance(t, Box) and t.box_type in (BoxType.STRING, BoxType.LITERAL):
            return box(t.language or "")
        raise ExpressionError(f"lang() needs a literal, got {t!r}")
    return Call("lang", _lang, (as_expression(value),))


def datatype(value: Any, vocabulary: Any = None) -> Expr:
    """Datatype Uri of a literal (XSD mapping of the box tag)."""
    def _datatype(t: Term) -> Term:
        if not isinstance(t, Box) or t.box_type is BoxType.FORMULAS:
            raise ExpressionError(f"datatype() needs a literal, got {t!r}")
        if t.datatype is not None:
            return t.datatype
        if vocabulary is None:
            raise ExpressionError("datatype() of a scalar box needs a vocabulary")
        result = vocabulary.datatype_of(t.box_type)
        if result is None:
            raise ExpressionError(f"no datatype for {t!r}")
        return result
    return Call("datatype", _datatype, (as_expression(value),))


def regex(value: Any, pattern: str, flags: str = "") -> Expr:
    compiled = re.compile(pattern, re.IGNORECASE if "i" in flags else 0)
    return Call("regex", lambda t: _boolean(compiled.search(_lexical(t)) is not None), (as_expression(value),))


def concat(*values: Any) -> Expr:
    return Call("concat", lambda *ts: box("".join(_lexical(t) for t in ts)), tuple(as_expression(v) for v in values))


def is_uri(value: Any) -> Expr:
    return Call("isUri", lambda t: _boolean(isinstance(t, Uri)), (as_expression(value),))


def is_blank(value: Any) -> Expr:
    return Call("isBlank", lambda t: _boolean(isinstance(t, Blank)), (as_expression(value),))


def is_literal(value: Any) -> Expr:
    return Call(
        "isLiteral",
        lambda t: _boolean(isinstance(t, Box) and t.box_type is not BoxType.FORMULAS),
        (as_expression(value),),
    )


def lang_literal(value: str, language: str) -> Const:
    return Const(literal(value, language=language))


# =============================================================================
# AGGREGATES
# =============================================================================


class Aggregate(ABC):
    """Reduces the rows of a group to a single term."""

    def __init__(self, expression: Any = None, distinct: bool = False):
        self.expression = as_expression(expression) if expression is not None else None
        self.distinct = distinct

    def values(self, rows: Sequence[Row]) -> list[Term]:
        """Evaluated expression per row; errors and unbound values are skipped."""
        out: list[Term] = []
        for row in rows:
            try:
                out.append(self.expression.evaluate(row))
            except ExpressionError:
                continue
        if self.distinct:
            out = list(dict.fromkeys(out))
        return out

    @abstractmethod
    def compute(self, rows: Sequence[Row]) -> Term:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__.lower()}({self.expression!r})"


class Count(Aggregate):
    def compute(self, rows: Sequence[Row]) -> Term:
        if self.expression is None:
            if self.distinct:
                return box(len({frozenset(r.items()) for r in rows}))
            return box(len(rows))
        return box(len(self.values(rows)))


class Sum(Aggregate):
    def compute(self, rows: Sequence[Row]) -> Term:
        total: Term = box(0)
        for value in self.values(rows):
            total = Arithmetic("+", Const(total), Const(value)).evaluate({})
        return total


class Avg(Aggregate):
    def compute(self, rows: Sequence[Row]) -> Term:
        values = self.values(rows)
        if not values:
            return box(0)
        total: Term = box(0)
        for value in values:
            total = Arithmetic("+", Const(total), Const(value)).evaluate({})
        return Arithmetic("/", Const(total), Const(box(len(values)))).evaluate({})


class Min(Aggregate):
    def compute(self, rows: Sequence[Row]) -> Term:
        values = self.values(rows)
        if not values:
            raise ExpressionError("min() of an empty group")
        return min(values, key=lambda t: t.sort_key())


class Max(Aggregate):
    def compute(self, rows: Sequence[Row]) -> Term:
        values = self.values(rows)
        if not values:
            raise ExpressionError("max() of an empty group")
        return max(values, key=lambda t: t.sort_key())


class Sample(Aggregate):
    def compute(self, rows: Sequence[Row]) -> Term:
        values = self.values(rows)
        if not values:
            raise ExpressionError("sample() of an empty group")
        return values[0]


class GroupConcat(Aggregate):
    def __init__(self, expression: Any = None, distinct: bool = False, separator: str = " "):
        super().__init__(expression, distinct)
        self.separator = separator

    def compute(self, rows: Sequence[Row]) -> Term:
        return box(self.separator.join(_lexical(v) for v in self.values(rows)))


def count(expression: Any = None, distinct: bool = False) -> Count:
    return Count(expression, distinct)


def sum_(expression: Any, distinct: bool = False) -> Sum:
    return Sum(expression, distinct)


def avg(expression: Any, distinct: bool = False) -> Avg:
    return Avg(expression, distinct)


def min_(expression: Any) -> Min:
    return Min(expression)


def max_(expression: Any) -> Max:
    return Max(expression)


def sample(expression: Any) -> Sample:
    return Sample(expression)


def group_concat(expression: Any, separator: str = " ", distinct: bool = False) -> GroupConcat:
    return GroupConcat(expression, distinct, separator)

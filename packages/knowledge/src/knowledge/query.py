"""
knowledge/query.py - Query algebra

Queries are immutable trees of combinator nodes, built fluently and then
concluded into one of four terminal forms:

    Ask        -> bool
    Select     -> list of rows (dict Variable -> Term)
    Construct  -> list of formula collections (or one, merged)
    Describe   -> formula collection

Every builder method returns a new Query; nothing is evaluated until the
concluded query is handed to a collection.

Example:
    x, y = Variable("x"), Variable("y")
    q = (
        Query()
        .where(Formula(knows, x, y))
        .optional(Formula(name, y, Variable("n")))
        .filter(var("x").ne(y))
        .order_by(x)
        .limit(10)
        .select(x, y)
    )
    rows = formulas.query(q)

Offset and limit are always applied last: a combinator added after
limit()/offset() is placed beneath the slice.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import InvalidStateError, MalformedTermError
from .expressions import Aggregate, Expr, as_expression
from .terms import Box, BoxType, Formula, Term, Variable, box

if TYPE_CHECKING:
    from .collection import FormulaCollection, ReadOnlyFormulaCollection
    from .evaluation import Subscription


class QueryType(Enum):
    ASK = "ask"
    SELECT = "select"
    CONSTRUCT = "construct"
    DESCRIBE = "describe"


# =============================================================================
# ALGEBRA NODES
# =============================================================================


class Node:
    """Base class for algebra nodes."""

    def children(self) -> tuple[Node, ...]:
        return ()


@dataclass(frozen=True)
class Where(Node):
    """Conjunctive graph pattern."""

    patterns: tuple[Formula, ...]


@dataclass(frozen=True)
class Join(Node):
    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Union(Node):
    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class LeftJoin(Node):
    """Optional: every left row survives, extended where the right side matches."""

    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Exists(Node):
    left: Node
    right: Node
    negated: bool = False

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Minus(Node):
    left: Node
    right: Node

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Filter(Node):
    inner: Node
    expression: Expr

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


@dataclass(frozen=True)
class Extend(Node):
    """Bind: add a computed variable to every row."""

    inner: Node
    variable: Variable
    expression: Expr

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


@dataclass(frozen=True)
class Group(Node):
    inner: Node
    keys: tuple[Variable, ...]
    aggregates: tuple[tuple[Variable, Aggregate], ...] = ()
    having: tuple[Expr, ...] = ()

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


@dataclass(frozen=True)
class OrderBy(Node):
    inner: Node
    keys: tuple[tuple[Expr, bool], ...]  # (expression, descending)

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


@dataclass(frozen=True)
class Distinct(Node):
    inner: Node

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


@dataclass(frozen=True)
class Reduced(Node):
    inner: Node

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


@dataclass(frozen=True)
class Slice(Node):
    inner: Node
    offset: int = 0
    limit: int | None = None

    def children(self) -> tuple[Node, ...]:
        return (self.inner,)


EMPTY = Where(())


def _patterns(pattern: Any) -> tuple[Formula, ...]:
    """Normalize a formula, collection or iterable of formulas."""
    if isinstance(pattern, Formula):
        return (pattern,)
    if isinstance(pattern, Term):
        raise MalformedTermError(f"patterns are formulas, got {pattern!r}", pattern)
    formulas = tuple(pattern)
    for f in formulas:
        if not isinstance(f, Formula):
            raise MalformedTermError(f"patterns are formulas, got {f!r}", f)
    return formulas


def _variable(value: Any) -> Variable:
    if isinstance(value, Variable):
        return value
    if isinstance(value, str):
        return Variable(value.lstrip("?"))
    variable = getattr(value, "variable", None)
    if isinstance(variable, Variable):
        return variable
    raise MalformedTermError(f"expected a variable, got {value!r}", value)


# =============================================================================
# BUILDER
# =============================================================================


class Query:
    """Immutable fluent query builder.

    Combinators taking another pattern accept a Query, a Formula, a formula
    collection or an iterable of formulas.
    """

    def __init__(self, node: Node | None = None):
        self.node = node

    def _operand(self, other: Any) -> Node:
        if isinstance(other, Query):
            return other.node if other.node is not None else EMPTY
        return Where(_patterns(other))

    def _root(self) -> Node:
        return self.node if self.node is not None else EMPTY

    def _wrap(self, build: Callable[[Node], Node]) -> Query:
        node = self._root()
        if isinstance(node, Slice):
            return Query(replace(node, inner=build(node.inner)))
        return Query(build(node))

    # -------------------------------------------------------------------------
    # Pattern combinators
    # -------------------------------------------------------------------------

    def where(self, pattern: Any) -> Query:
        """Conjunctive pattern; joined with whatever came before."""
        right = self._operand(pattern)
        if self.node is None:
            return Query(right)

        def build(node: Node) -> Node:
            if isinstance(node, Where) and isinstance(right, Where):
                return Where(node.patterns + right.patterns)
            return Join(node, right)

        return self._wrap(build)

    def union(self, other: Any) -> Query:
        right = self._operand(other)
        return self._wrap(lambda node: Union(node, right))

    def optional(self, other: Any) -> Query:
        right = self._operand(other)
        return self._wrap(lambda node: LeftJoin(node, right))

    def exists(self, other: Any) -> Query:
        right = self._operand(other)
        return self._wrap(lambda node: Exists(node, right))

    def not_exists(self, other: Any) -> Query:
        right = self._operand(other)
        return self._wrap(lambda node: Exists(node, right, negated=True))

    def minus(self, other: Any) -> Query:
        right = self._operand(other)
        return self._wrap(lambda node: Minus(node, right))

    # -------------------------------------------------------------------------
    # Row combinators
    # -------------------------------------------------------------------------

    def filter(self, expression: Any) -> Query:
        """Keep rows whose expression is true; errors count as false."""
        expr = as_expression(expression)
        return self._wrap(lambda node: Filter(node, expr))

    def bind(self, variable: Any, expression: Any) -> Query:
        """Add variable computed from expression.

        Raises VariableAlreadyBoundError at evaluation time if a row already
        binds variable.
        """
        target = _variable(variable)
        expr = as_expression(expression)
        return self._wrap(lambda node: Extend(node, target, expr))

    def group_by(self, *keys: Any, having: Any = None, **aggregates: Aggregate) -> Query:
        """Group rows by keys; keyword arguments bind aggregate results.

        Example:
            Query().where(...).group_by("dept", total=sum_(var("salary")))
        """
        key_vars = tuple(_variable(k) for k in keys)
        bound = tuple((Variable(name), agg) for name, agg in aggregates.items())
        conditions = (as_expression(having),) if having is not None else ()
        return self._wrap(lambda node: Group(node, key_vars, bound, conditions))

    def having(self, expression: Any) -> Query:
        expr = as_expression(expression)

        def build(node: Node) -> Node:
            if not isinstance(node, Group):
                raise InvalidStateError("having() must follow group_by()")
            return replace(node, having=node.having + (expr,))

        return self._wrap(build)

    def order_by(self, expression: Any) -> Query:
        return self._order(expression, descending=False, extend=False)

    def order_by_descending(self, expression: Any) -> Query:
        return self._order(expression, descending=True, extend=False)

    def then_by(self, expression: Any) -> Query:
        return self._order(expression, descending=False, extend=True)

    def then_by_descending(self, expression: Any) -> Query:
        return self._order(expression, descending=True, extend=True)

    def _order(self, expression: Any, descending: bool, extend: bool) -> Query:
        key = (as_expression(expression), descending)

        def build(node: Node) -> Node:
            if isinstance(node, OrderBy):
                if extend:
                    return OrderBy(node.inner, node.keys + (key,))
                return OrderBy(node.inner, (key,))
            if extend:
                raise InvalidStateError("then_by() must follow order_by()")
            return OrderBy(node, (key,))

        return self._wrap(build)

    def distinct(self) -> Query:
        return self._wrap(Distinct)

    def reduced(self) -> Query:
        return self._wrap(Reduced)

    def offset(self, count: int) -> Query:
        if count < 0:
            raise ValueError(f"offset must be non-negative, got {count}")
        node = self._root()
        if isinstance(node, Slice):
            limit = None if node.limit is None else max(0, node.limit - count)
            return Query(Slice(node.inner, node.offset + count, limit))
        return Query(Slice(node, count, None))

    def limit(self, count: int) -> Query:
        if count < 0:
            raise ValueError(f"limit must be non-negative, got {count}")
        node = self._root()
        if isinstance(node, Slice):
            limit = count if node.limit is None else min(node.limit, count)
            return Query(Slice(node.inner, node.offset, limit))
        return Query(Slice(node, 0, count))

    # -------------------------------------------------------------------------
    # Terminals
    # -------------------------------------------------------------------------

    def ask(self) -> AskQuery:
        return AskQuery(self._root())

    def select(self, *variables: Any) -> SelectQuery:
        """Project rows onto variables; no variables keeps whole rows."""
        return SelectQuery(self._root(), tuple(_variable(v) for v in variables))

    def construct(self, template: Any, merge: bool = False) -> ConstructQuery:
        """Instantiate template once per row.

        Args:
            template: Formula collection (its schema validates every output)
                or iterable of formulas
            merge: Return one collection holding every row's output
        """
        from .collection import ReadOnlyFormulaCollection

        if not isinstance(template, ReadOnlyFormulaCollection):
            template = ReadOnlyFormulaCollection(_patterns(template))
        return ConstructQuery(self._root(), template.snapshot(), merge)

    def describe(self, *terms: Any) -> DescribeQuery:
        """Every formula mentioning one of terms; variables take their row values."""
        return DescribeQuery(self.node, tuple(terms))

    def __repr__(self) -> str:
        return f"Query({self.node!r})"


def where(pattern: Any) -> Query:
    """Start a query from a graph pattern."""
    return Query().where(pattern)


# =============================================================================
# TERMINAL QUERIES
# =============================================================================


@dataclass(frozen=True)
class ConcludedQuery(ABC):
    """A query concluded into one of the four result forms."""

    node: Node | None

    query_type = QueryType.ASK

    @property
    def is_ask(self) -> bool:
        return self.query_type is QueryType.ASK

    @abstractmethod
    def execute(self, collection: ReadOnlyFormulaCollection) -> Any:
        """Evaluate against collection and return the concluded result."""

    @abstractmethod
    def results(self, collection: ReadOnlyFormulaCollection) -> Iterator[Any]:
        """Lazy result sequence; count_rows() equals its length."""

    def count_rows(self, collection: ReadOnlyFormulaCollection) -> int:
        return sum(1 for _ in self.results(collection))

    def subscribe(self, collection: ReadOnlyFormulaCollection, observer: Any) -> Subscription:
        raise InvalidStateError(f"{self.query_type.value} queries do not support push delivery")

    def _evaluator(self, collection: ReadOnlyFormulaCollection):
        from .evaluation import Evaluator

        return Evaluator(collection)

    def serialize(self, into: FormulaCollection) -> Term:
        """Describe this query with the builtin query vocabulary.

        Returns:
            The term identifying the query inside `into`
        """
        vocab = into.vocabulary
        term = vocab.blank()
        root = _serialize_node(self.node or EMPTY, into)
        into.add(self._head(vocab, term, root))
        return term

    def _head(self, vocab, term: Term, root: Term) -> Formula:
        return Formula(vocab.query[self.query_type.value], term, root)


@dataclass(frozen=True)
class AskQuery(ConcludedQuery):
    query_type = QueryType.ASK

    def execute(self, collection: ReadOnlyFormulaCollection) -> bool:
        for _ in self._evaluator(collection).rows(self.node):
            return True
        return False

    def results(self, collection: ReadOnlyFormulaCollection) -> Iterator[dict]:
        return self._evaluator(collection).rows(self.node)


@dataclass(frozen=True)
class SelectQuery(ConcludedQuery):
    variables: tuple[Variable, ...] = ()

    query_type = QueryType.SELECT

    def execute(self, collection: ReadOnlyFormulaCollection) -> list[dict]:
        return list(self.results(collection))

    def results(self, collection: ReadOnlyFormulaCollection) -> Iterator[dict]:
        rows = self._evaluator(collection).rows(self.node)
        if not self.variables:
            return rows
        return ({v: row[v] for v in self.variables if v in row} for row in rows)

    def subscribe(self, collection: ReadOnlyFormulaCollection, observer: Any) -> Subscription:
        from .evaluation import Subscription

        return Subscription(self.results(collection.snapshot()), observer)

    def _head(self, vocab, term: Term, root: Term) -> Formula:
        return Formula(vocab.query.select, term, root, box(" ".join(v.name for v in self.variables)))


@dataclass(frozen=True)
class ConstructQuery(ConcludedQuery):
    template: Any = None
    merge: bool = False

    query_type = QueryType.CONSTRUCT

    def execute(self, collection: ReadOnlyFormulaCollection) -> Any:
        outputs = list(self.results(collection))
        if not self.merge:
            return outputs
        from .collection import ReadOnlyFormulaCollection

        merged: dict[Formula, None] = {}
        for output in outputs:
            merged.update(dict.fromkeys(output))
        return ReadOnlyFormulaCollection(
            merged,
            schema=self.template.schema,
            vocabulary=collection.vocabulary,
        )

    def results(self, collection: ReadOnlyFormulaCollection) -> Iterator[Any]:
        evaluator = self._evaluator(collection)
        return (evaluator.instantiate(self.template, row) for row in evaluator.rows(self.node))

    def count_rows(self, collection: ReadOnlyFormulaCollection) -> int:
        return sum(1 for _ in self._evaluator(collection).rows(self.node))

    def subscribe(self, collection: ReadOnlyFormulaCollection, observer: Any) -> Subscription:
        from .evaluation import Subscription

        return Subscription(self.results(collection.snapshot()), observer)

    def _head(self, vocab, term: Term, root: Term) -> Formula:
        return Formula(vocab.query.construct, term, root, Box(BoxType.FORMULAS, self.template))


@dataclass(frozen=True)
class DescribeQuery(ConcludedQuery):
    terms: tuple[Any, ...] = field(default_factory=tuple)

    query_type = QueryType.DESCRIBE

    def execute(self, collection: ReadOnlyFormulaCollection) -> ReadOnlyFormulaCollection:
        return self._evaluator(collection).describe(self.node, self.terms)

    def results(self, collection: ReadOnlyFormulaCollection) -> Iterator[Formula]:
        return iter(self.execute(collection))

    def _head(self, vocab, term: Term, root: Term) -> Formula:
        return Formula(vocab.query.describe, term, root, *self.terms)


# =============================================================================
# FORMULA FORM
# =============================================================================


def _serialize_node(node: Node, into: FormulaCollection) -> Term:
    """Add formulas describing node to into; returns the node's term."""
    from .collection import ReadOnlyFormulaCollection

    q = into.vocabulary.query
    term = into.vocabulary.blank()
    inputs = [_serialize_node(child, into) for child in node.children()]

    if isinstance(node, Where):
        into.add(Formula(q.where, term, Box(BoxType.FORMULAS, ReadOnlyFormulaCollection(node.patterns))))
    elif isinstance(node, Join):
        into.add(Formula(q.join, term, *inputs))
    elif isinstance(node, Union):
        into.add(Formula(q.union, term, *inputs))
    elif isinstance(node, LeftJoin):
        into.add(Formula(q.optional, term, *inputs))
    elif isinstance(node, Exists):
        into.add(Formula(q.notExists if node.negated else q.exists, term, *inputs))
    elif isinstance(node, Minus):
        into.add(Formula(q.minus, term, *inputs))
    elif isinstance(node, Filter):
        into.add(Formula(q.filter, term, *inputs, box(repr(node.expression))))
    elif isinstance(node, Extend):
        into.add(Formula(q.bind, term, *inputs, node.variable, box(repr(node.expression))))
    elif isinstance(node, Group):
        keys = " ".join(v.name for v in node.keys)
        into.add(Formula(q.groupBy, term, *inputs, box(keys)))
        for expr in node.having:
            into.add(Formula(q.having, term, box(repr(expr))))
    elif isinstance(node, OrderBy):
        for expr, descending in node.keys:
            predicate = q.orderByDescending if descending else q.orderBy
            into.add(Formula(predicate, term, *inputs, box(repr(expr))))
    elif isinstance(node, Distinct):
        into.add(Formula(q.distinct, term, *inputs))
    elif isinstance(node, Reduced):
        into.add(Formula(q.reduced, term, *inputs))
    elif isinstance(node, Slice):
        into.add(Formula(q.offset, term, *inputs, box(node.offset)))
        if node.limit is not None:
            into.add(Formula(q.limit, term, *inputs, box(node.limit)))
    else:
        raise InvalidStateError(f"unknown query node {type(node).__name__}")
    return term

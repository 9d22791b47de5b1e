"""
knowledge/evaluation.py - Query evaluator and push subscriptions

The evaluator walks a query algebra tree over a point-in-time snapshot of
a formula collection and produces result rows lazily. Rows are dicts
Variable -> Term.

Semantics:
    Where     conjunctive join; patterns are matched most-bound first
    Join      right side seeded with each left row
    Union     bag union
    LeftJoin  left outer join
    Exists    semi-join / anti-semi-join (negated)
    Minus     drop left rows compatible with a right row sharing a variable
    Filter    errors and unbound references count as false
    Extend    VariableAlreadyBoundError on rebinding; errors leave it unbound
    Group     first-occurrence group order, aggregates, having
    OrderBy   stable multi-key sort; unbound/error keys sort first
    Distinct  first occurrence kept, order preserved (Reduced likewise)
    Slice     offset/limit; limit 0 never evaluates its input

Subscription delivers a result sequence to an observer from a background
producer through a bounded queue.
"""
from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from .collection import ReadOnlyFormulaCollection
from .config import get_settings
from .disposable import Disposable
from .errors import ExpressionError, InvalidStateError, SchemaViolationError, VariableAlreadyBoundError
from .expressions import Expr, effective_boolean
from .query import (
    Distinct,
    Exists,
    Extend,
    Filter,
    Group,
    Join,
    LeftJoin,
    Minus,
    Node,
    OrderBy,
    Reduced,
    Slice,
    Union,
    Where,
)
from .substitution import Substitution, bind_pattern, compatible, merge, shares_variables
from .terms import Formula, Term, Variable

logger = logging.getLogger(__name__)

Row = Substitution


def _truth(expression: Expr, row: Mapping[Variable, Term]) -> bool:
    try:
        return effective_boolean(expression.evaluate(row))
    except ExpressionError:
        return False


class Evaluator:
    """Evaluates algebra nodes against one snapshot.

    Example:
        evaluator = Evaluator(formulas)
        for row in evaluator.rows(query.node):
            ...
    """

    def __init__(self, collection: ReadOnlyFormulaCollection):
        self.collection = collection.snapshot()
        self._materialized: dict[int, list[Row]] = {}

    def rows(self, node: Node | None) -> Iterator[Row]:
        if node is None:
            return iter([{}])
        return self._eval(node)

    def _eval(self, node: Node) -> Iterator[Row]:
        if isinstance(node, Where):
            return self._where(node.patterns, {})
        if isinstance(node, Join):
            return self._join(node)
        if isinstance(node, Union):
            return itertools.chain(self._eval(node.left), self._eval(node.right))
        if isinstance(node, LeftJoin):
            return self._left_join(node)
        if isinstance(node, Exists):
            return self._exists(node)
        if isinstance(node, Minus):
            return self._minus(node)
        if isinstance(node, Filter):
            return (row for row in self._eval(node.inner) if _truth(node.expression, row))
        if isinstance(node, Extend):
            return self._extend(node)
        if isinstance(node, Group):
            return self._group(node)
        if isinstance(node, OrderBy):
            return self._order(node)
        if isinstance(node, (Distinct, Reduced)):
            return self._distinct(node.inner)
        if isinstance(node, Slice):
            return self._slice(node)
        raise InvalidStateError(f"unknown query node {type(node).__name__}")

    # -------------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------------

    def _where(self, patterns: tuple[Formula, ...], row: Row) -> Iterator[Row]:
        return solve(self.collection, patterns, row)

    def _extensions(self, node: Node, row: Row) -> Iterator[Row]:
        """Rows of node compatible with row, merged into it."""
        if isinstance(node, Where):
            yield from self._where(node.patterns, row)
            return
        for other in self._materialize(node):
            if compatible(row, other):
                yield merge(row, other)

    def _materialize(self, node: Node) -> list[Row]:
        key = id(node)
        rows = self._materialized.get(key)
        if rows is None:
            rows = self._materialized[key] = list(self._eval(node))
        return rows

    def _join(self, node: Join) -> Iterator[Row]:
        for left in self._eval(node.left):
            yield from self._extensions(node.right, left)

    def _left_join(self, node: LeftJoin) -> Iterator[Row]:
        for left in self._eval(node.left):
            extended = False
            for row in self._extensions(node.right, left):
                extended = True
                yield row
            if not extended:
                yield left

    def _exists(self, node: Exists) -> Iterator[Row]:
        for left in self._eval(node.left):
            found = next(self._extensions(node.right, left), None) is not None
            if found != node.negated:
                yield left

    def _minus(self, node: Minus) -> Iterator[Row]:
        right = self._materialize(node.right)
        for left in self._eval(node.left):
            if not any(shares_variables(left, r) and compatible(left, r) for r in right):
                yield left

    # -------------------------------------------------------------------------
    # Row operators
    # -------------------------------------------------------------------------

    def _extend(self, node: Extend) -> Iterator[Row]:
        for row in self._eval(node.inner):
            if node.variable in row:
                raise VariableAlreadyBoundError(f"{node.variable!r} is already bound", node.variable)
            try:
                value = node.expression.evaluate(row)
            except ExpressionError as e:
                logger.debug(f"Bind of {node.variable!r} left unbound: {e}")
                yield row
                continue
            extended = dict(row)
            extended[node.variable] = value
            yield extended

    def _group(self, node: Group) -> Iterator[Row]:
        groups: dict[tuple, list[Row]] = {}
        for row in self._eval(node.inner):
            key = tuple(row.get(k) for k in node.keys)
            groups.setdefault(key, []).append(row)
        if not groups and not node.keys:
            groups[()] = []
        logger.debug(f"Grouped into {len(groups)} group(s) by {node.keys!r}")

        for key, members in groups.items():
            out: Row = {k: v for k, v in zip(node.keys, key) if v is not None}
            for variable, aggregate in node.aggregates:
                try:
                    out[variable] = aggregate.compute(members)
                except ExpressionError as e:
                    logger.debug(f"Aggregate {aggregate!r} left {variable!r} unbound: {e}")
            if all(_truth(condition, out) for condition in node.having):
                yield out

    def _order(self, node: OrderBy) -> Iterator[Row]:
        rows = list(self._eval(node.inner))
        # Stable sorts applied from the last key to the first
        for expression, descending in reversed(node.keys):
            rows.sort(key=lambda row: _sort_key(expression, row), reverse=descending)
        return iter(rows)

    def _distinct(self, inner: Node) -> Iterator[Row]:
        seen: set[frozenset] = set()
        for row in self._eval(inner):
            key = frozenset(row.items())
            if key not in seen:
                seen.add(key)
                yield row

    def _slice(self, node: Slice) -> Iterator[Row]:
        if node.limit == 0:
            return iter(())
        stop = None if node.limit is None else node.offset + node.limit
        return itertools.islice(self._eval(node.inner), node.offset, stop)

    # -------------------------------------------------------------------------
    # Terminal helpers
    # -------------------------------------------------------------------------

    def instantiate(self, template: ReadOnlyFormulaCollection, row: Row) -> ReadOnlyFormulaCollection:
        """Construct output for one row, checked against the template's schema."""
        formulas = [f.substitute(row) for f in template]
        schema = template.schema
        if schema is not None and not schema.accepts_all(formulas):
            raise SchemaViolationError(f"constructed formulas for {row!r} violate the template schema")
        return ReadOnlyFormulaCollection(formulas, schema=schema, vocabulary=self.collection.vocabulary)

    def describe(self, node: Node | None, terms: Iterable[Any]) -> ReadOnlyFormulaCollection:
        """Formulas mentioning any of terms; variables resolve through the rows of node."""
        targets: dict[Term, None] = {}
        variables = [t for t in terms if isinstance(t, Variable)]
        for t in terms:
            if not isinstance(t, Variable):
                targets.setdefault(t)
        if variables:
            for row in self.rows(node):
                for v in variables:
                    if v in row:
                        targets.setdefault(row[v])

        described = [
            f for f in self.collection
            if any(f.mentions(t) for t in targets)
        ]
        return ReadOnlyFormulaCollection(described, vocabulary=self.collection.vocabulary)


def solve(collection: ReadOnlyFormulaCollection, patterns: tuple[Formula, ...], row: Row) -> Iterator[Row]:
    """Extensions of row satisfying every pattern against collection.

    Patterns are matched most-bound first so each find() is as selective
    as possible.
    """
    if not patterns:
        yield dict(row)
        return
    index = _most_bound(patterns, row)
    pattern = patterns[index]
    rest = patterns[:index] + patterns[index + 1:]
    for formula in collection.find(pattern.substitute(row)):
        extended = bind_pattern(pattern, formula, row)
        if extended is not None:
            yield from solve(collection, rest, extended)


def _most_bound(patterns: tuple[Formula, ...], row: Row) -> int:
    """Index of the pattern with the most concrete positions under row."""
    best, best_score = 0, -1
    for i, pattern in enumerate(patterns):
        score = sum(
            1 for t in pattern.terms()
            if t.is_ground() or (isinstance(t, Variable) and t in row)
        )
        if score > best_score:
            best, best_score = i, score
    return best


def _sort_key(expression: Expr, row: Row) -> tuple:
    try:
        return (1, expression.evaluate(row).sort_key())
    except ExpressionError:
        return (0,)


# =============================================================================
# PUSH DELIVERY
# =============================================================================

_COMPLETED = object()


class _Failed:
    def __init__(self, error: BaseException):
        self.error = error


class Subscription(Disposable):
    """Push-based delivery of a result sequence.

    A producer thread enumerates results into a bounded queue; a consumer
    thread invokes the observer. The observer is either a callable (called
    per result) or an object with on_next and optionally on_error and
    on_completed.

    Disposal is idempotent and waits for an in-flight callback, so no
    callback completes after dispose() returns. Called from inside a
    callback it returns immediately.

    Example:
        sub = formulas.query(select_query, lambda row: print(row))
        sub.wait(timeout=1.0)
        sub.dispose()
    """

    def __init__(self, results: Iterable[Any], observer: Any, queue_size: int | None = None):
        super().__init__(self._cancel)
        if callable(observer) and not hasattr(observer, "on_next"):
            self._on_next = observer
            self._on_error = None
            self._on_completed = None
        else:
            self._on_next = observer.on_next
            self._on_error = getattr(observer, "on_error", None)
            self._on_completed = getattr(observer, "on_completed", None)

        self._queue: queue.Queue = queue.Queue(maxsize=queue_size or get_settings().subscriber_queue_size)
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._callback_lock = threading.RLock()
        self.delivered = 0

        self._producer = threading.Thread(target=self._produce, args=(results,), daemon=True)
        self._consumer = threading.Thread(target=self._consume, daemon=True)
        self._consumer.start()
        self._producer.start()

    def _put(self, item: Any) -> bool:
        while not self._cancelled.is_set():
            try:
                self._queue.put(item, timeout=0.05)
                return True
            except queue.Full:
                continue
        return False

    def _produce(self, results: Iterable[Any]) -> None:
        try:
            for item in results:
                if not self._put(item):
                    return
        except Exception as e:
            logger.warning(f"Query evaluation failed during push delivery: {e}")
            self._put(_Failed(e))
            return
        self._put(_COMPLETED)

    def _consume(self) -> None:
        try:
            while not self._cancelled.is_set():
                try:
                    item = self._queue.get(timeout=0.05)
                except queue.Empty:
                    continue
                with self._callback_lock:
                    if self._cancelled.is_set():
                        return
                    if item is _COMPLETED:
                        if self._on_completed is not None:
                            self._on_completed()
                        return
                    if isinstance(item, _Failed):
                        if self._on_error is not None:
                            self._on_error(item.error)
                        return
                    self._on_next(item)
                    self.delivered += 1
        except Exception as e:
            logger.warning(f"Subscriber callback failed, cancelling subscription: {e}", exc_info=True)
            self._cancelled.set()
        finally:
            self._finished.set()

    def _cancel(self) -> None:
        self._cancelled.set()
        if threading.current_thread() is not self._consumer:
            # Block until any in-flight callback returns
            with self._callback_lock:
                pass

    @property
    def is_completed(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until delivery ends (completed, failed, or cancelled)."""
        return self._finished.wait(timeout)

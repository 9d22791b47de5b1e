"""
knowledge/updates.py - Update model

Four update variants, each applicable two ways:

- apply(formulas): pure; returns a new read-only collection
- update(formulas): mutates a mutable collection in place

Both are observably equivalent: formulas.clone().apply(u) has the same
formula set as a mutable copy after copy.update(u).

Variants:
    SimpleUpdate        (formulas minus removals) plus additions
    QueryBasedUpdate    removals/additions instantiated once per Select row
    CompositeUpdate     children applied in order
    ConditionalUpdate   Ask evaluated once against the input, then if/else

Example:
    u = SimpleUpdate(removals=[knows(alice, bob)], additions=[knows(alice, carol)])
    after = formulas.apply(u)
    undo = u.inverse()
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any

from .collection import FormulaCollection, ReadOnlyFormulaCollection
from .errors import InvalidStateError
from .query import QueryType
from .terms import Box, BoxType, Formula, Term

if TYPE_CHECKING:
    from .query import AskQuery, SelectQuery

logger = logging.getLogger(__name__)


class UpdateType(Enum):
    SIMPLE = "simple"
    QUERY_BASED = "queryBased"
    COMPOSITE = "composite"
    CONDITIONAL = "conditional"


def _collection(formulas: Any) -> ReadOnlyFormulaCollection:
    if formulas is None:
        return ReadOnlyFormulaCollection()
    if isinstance(formulas, ReadOnlyFormulaCollection):
        return formulas.snapshot()
    if isinstance(formulas, Formula):
        return ReadOnlyFormulaCollection([formulas])
    return ReadOnlyFormulaCollection(formulas)


def _mutable(formulas: ReadOnlyFormulaCollection) -> FormulaCollection:
    if formulas.is_read_only:
        raise InvalidStateError(f"update() needs a mutable collection, got read-only {formulas.term!r}")
    return formulas  # type: ignore[return-value]


class Update(ABC):
    """Base class for updates."""

    update_type: UpdateType

    @abstractmethod
    def apply(self, formulas: ReadOnlyFormulaCollection) -> ReadOnlyFormulaCollection:
        """Return formulas with the update applied; formulas is unchanged."""

    @abstractmethod
    def update(self, formulas: FormulaCollection) -> None:
        """Apply the update to a mutable collection in place.

        Raises:
            InvalidStateError: formulas is read-only
        """

    def then(self, other: Update) -> CompositeUpdate:
        """This update followed by other."""
        first = self.children if isinstance(self, CompositeUpdate) else (self,)
        second = other.children if isinstance(other, CompositeUpdate) else (other,)
        return CompositeUpdate(first + second)

    @abstractmethod
    def serialize(self, into: FormulaCollection) -> Term:
        """Describe this update with the builtin update vocabulary."""


class SimpleUpdate(Update):
    """Explicit removals and additions.

    Additions win over removals of the same formula.
    """

    update_type = UpdateType.SIMPLE

    def __init__(self, removals: Any = None, additions: Any = None):
        self.removals = _collection(removals)
        self.additions = _collection(additions)

    @property
    def is_empty(self) -> bool:
        return not self.removals and not self.additions

    def apply(self, formulas: ReadOnlyFormulaCollection) -> ReadOnlyFormulaCollection:
        if self.is_empty:
            return formulas.snapshot()
        return ReadOnlyFormulaCollection.clone(formulas, self.removals, self.additions)

    def update(self, formulas: FormulaCollection) -> None:
        target = _mutable(formulas)
        removals = [f for f in self.removals if f not in self.additions]
        target.change(removals, self.additions)

    def inverse(self) -> SimpleUpdate:
        """Update undoing this one on a collection that held every removal
        and none of the additions beforehand."""
        return SimpleUpdate(removals=self.additions, additions=self.removals)

    def serialize(self, into: FormulaCollection) -> Term:
        vocab = into.vocabulary
        term = vocab.blank()
        into.add(Formula(
            vocab.update.simple,
            term,
            Box(BoxType.FORMULAS, self.removals),
            Box(BoxType.FORMULAS, self.additions),
        ))
        return term

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SimpleUpdate):
            return NotImplemented
        return self.removals == other.removals and self.additions == other.additions

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"SimpleUpdate(-{len(self.removals)}, +{len(self.additions)})"


class QueryBasedUpdate(Update):
    """Removals/additions templates instantiated by each row of a Select.

    Rows are applied in result order; when rows conflict (one row removes
    what another adds) the later row wins.
    """

    update_type = UpdateType.QUERY_BASED

    def __init__(self, query: SelectQuery, removals: Any = None, additions: Any = None):
        if getattr(query, "query_type", None) is not QueryType.SELECT:
            raise InvalidStateError("query-based updates need a Select query")
        self.query = query
        self.removals = _collection(removals)
        self.additions = _collection(additions)

    def _fold(self, formulas: ReadOnlyFormulaCollection) -> SimpleUpdate:
        """Resolve rows into one simple update, last row winning."""
        rows = self.query.execute(formulas)
        net: dict[Formula, bool] = {}  # formula -> added?
        for row in rows:
            for f in self.removals:
                g = f.substitute(row)
                net.pop(g, None)
                net[g] = False
            for f in self.additions:
                g = f.substitute(row)
                net.pop(g, None)
                net[g] = True
        logger.debug(f"Query-based update resolved {len(rows)} row(s) into {len(net)} change(s)")
        return SimpleUpdate(
            removals=[f for f, added in net.items() if not added],
            additions=[f for f, added in net.items() if added],
        )

    def apply(self, formulas: ReadOnlyFormulaCollection) -> ReadOnlyFormulaCollection:
        return self._fold(formulas).apply(formulas)

    def update(self, formulas: FormulaCollection) -> None:
        self._fold(_mutable(formulas).snapshot()).update(formulas)

    def serialize(self, into: FormulaCollection) -> Term:
        vocab = into.vocabulary
        term = vocab.blank()
        query_term = self.query.serialize(into)
        into.add(Formula(
            vocab.update.queryBased,
            term,
            query_term,
            Box(BoxType.FORMULAS, self.removals),
            Box(BoxType.FORMULAS, self.additions),
        ))
        return term


class CompositeUpdate(Update):
    """Ordered sequence of updates, each seeing its predecessors' result."""

    update_type = UpdateType.COMPOSITE

    def __init__(self, children: Iterable[Update] = ()):
        self.children: tuple[Update, ...] = tuple(children)

    def apply(self, formulas: ReadOnlyFormulaCollection) -> ReadOnlyFormulaCollection:
        result = formulas.snapshot()
        for child in self.children:
            result = child.apply(result)
        return result

    def update(self, formulas: FormulaCollection) -> None:
        target = _mutable(formulas)
        for child in self.children:
            child.update(target)

    def serialize(self, into: FormulaCollection) -> Term:
        vocab = into.vocabulary
        term = vocab.blank()
        into.add(Formula(vocab.update.composite, term, *(c.serialize(into) for c in self.children)))
        return term

    def __len__(self) -> int:
        return len(self.children)


class ConditionalUpdate(Update):
    """if_ when the Ask query holds on the input, else_ otherwise."""

    update_type = UpdateType.CONDITIONAL

    def __init__(self, query: AskQuery, if_: Update | None = None, else_: Update | None = None):
        if not getattr(query, "is_ask", False):
            raise InvalidStateError("conditional updates need an Ask query")
        self.query = query
        self.if_ = if_ if if_ is not None else SimpleUpdate()
        self.else_ = else_ if else_ is not None else SimpleUpdate()

    def choose(self, formulas: ReadOnlyFormulaCollection) -> Update:
        return self.if_ if self.query.execute(formulas) else self.else_

    def apply(self, formulas: ReadOnlyFormulaCollection) -> ReadOnlyFormulaCollection:
        return self.choose(formulas).apply(formulas)

    def update(self, formulas: FormulaCollection) -> None:
        target = _mutable(formulas)
        self.choose(target.snapshot()).update(target)

    def serialize(self, into: FormulaCollection) -> Term:
        vocab = into.vocabulary
        term = vocab.blank()
        into.add(Formula(
            vocab.update.conditional,
            term,
            self.query.serialize(into),
            self.if_.serialize(into),
            self.else_.serialize(into),
        ))
        return term

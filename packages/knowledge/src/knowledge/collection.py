"""
knowledge/collection.py - Formula collections

The formula collection is the store's central value: a set of formulas
plus an identifier term, an "about" metadata collection, an optional
schema, and per-formula metadata. Two flavours:

- ReadOnlyFormulaCollection: immutable; safe to share across threads
- FormulaCollection: mutable, single-writer; add/remove report whether
  the set changed

Features:
- Formula storage indexed by (predicate, arity) and by arity
- Lazy, restartable pattern search (find)
- Query dispatch (ask/select/construct/describe, push-based subscriptions)
- Deltas (difference_from, clone with removals/additions, apply)
- Change notification and Ask-keyed event subscriptions (see events.py)
- Transactions with rollback on mutable collections
"""
from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from .config import get_settings
from .errors import InvalidStateError, MalformedTermError, SchemaViolationError
from .events import EventSource
from .terms import AnyTerm, Formula, Term, Variable
from .vocabulary import Vocabulary

if TYPE_CHECKING:
    from .updates import SimpleUpdate, Update

logger = logging.getLogger(__name__)


class ReadOnlyFormulaCollection(EventSource):
    """Immutable set of formulas with metadata.

    Example:
        knows = Uri("http://xmlns.com/foaf/0.1/knows")
        alice, bob = Uri("urn:alice"), Uri("urn:bob")
        formulas = ReadOnlyFormulaCollection([
            Formula(knows, alice, bob),
            Formula(knows, bob, alice),
        ])

        # Pattern search
        for f in formulas.find(Formula(knows, alice, ANY)):
            print(f)  # knows(alice, bob)
    """

    def __init__(
        self,
        formulas: Iterable[Formula] = (),
        *,
        term: Term | None = None,
        about: ReadOnlyFormulaCollection | None = None,
        schema: Any = None,
        vocabulary: Vocabulary | None = None,
        formula_about: Mapping[Formula, ReadOnlyFormulaCollection] | None = None,
        strict: bool = False,
    ):
        """Initialize collection.

        Args:
            formulas: Initial formulas
            term: Identifier of the collection (fresh blank if None)
            about: Metadata describing the collection itself
            schema: Schema the formulas are checked against
            vocabulary: Vocabulary supplying blank labels and well-known terms
            formula_about: Metadata attached to individual formulas
            strict: Raise SchemaViolationError instead of reporting is_valid
                False, here and on every later addition
        """
        self._init_events()
        self._term = term
        self._about = about
        self._schema = schema
        self._vocabulary = vocabulary
        self._strict = strict

        # Ordered set of formulas (dict preserves insertion order)
        self._formulas: dict[Formula, None] = {}

        # Index formulas by (predicate, arity) and by arity
        self._index: dict[tuple[Term, int], dict[Formula, None]] = defaultdict(dict)
        self._by_arity: dict[int, dict[Formula, None]] = defaultdict(dict)

        self._formula_about: dict[Formula, ReadOnlyFormulaCollection] = {}

        for formula in formulas:
            self._insert(formula)
        for formula, meta in (formula_about or {}).items():
            if formula in self._formulas:
                self._formula_about[formula] = meta

        self._valid: bool | None = None
        self._hash: int | None = None

        if self._schema is not None and not self.is_valid:
            if strict:
                raise SchemaViolationError(f"collection {self.term!r} does not satisfy its schema")
            logger.warning(f"Collection {self.term!r} constructed with formulas its schema rejects")

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _insert(self, formula: Formula) -> bool:
        if not isinstance(formula, Formula):
            raise MalformedTermError(f"collections hold formulas, got {formula!r}", formula)
        if formula in self._formulas:
            return False
        self._formulas[formula] = None
        self._index[(formula.predicate, formula.arity)][formula] = None
        self._by_arity[formula.arity][formula] = None
        return True

    def _discard(self, formula: Formula) -> bool:
        if formula not in self._formulas:
            return False
        del self._formulas[formula]
        key = (formula.predicate, formula.arity)
        bucket = self._index[key]
        del bucket[formula]
        if not bucket:
            del self._index[key]
        bucket = self._by_arity[formula.arity]
        del bucket[formula]
        if not bucket:
            del self._by_arity[formula.arity]
        self._formula_about.pop(formula, None)
        return True

    def _derive(self, formulas: Iterable[Formula]) -> ReadOnlyFormulaCollection:
        """New read-only collection sharing this one's metadata."""
        formulas = list(formulas)
        keep = set(formulas)
        return ReadOnlyFormulaCollection(
            formulas,
            about=self._about,
            schema=self._schema,
            vocabulary=self._vocabulary,
            formula_about={f: m for f, m in self._formula_about.items() if f in keep},
            strict=self._strict,
        )

    # -------------------------------------------------------------------------
    # Metadata and flags
    # -------------------------------------------------------------------------

    @property
    def vocabulary(self) -> Vocabulary:
        if self._vocabulary is None:
            self._vocabulary = Vocabulary()
        return self._vocabulary

    @property
    def term(self) -> Term:
        if self._term is None:
            self._term = self.vocabulary.blank()
        return self._term

    @property
    def about(self) -> ReadOnlyFormulaCollection:
        if self._about is None:
            self._about = ReadOnlyFormulaCollection(vocabulary=self._vocabulary)
        return self._about

    @property
    def schema(self) -> Any:
        return self._schema

    @property
    def is_read_only(self) -> bool:
        return True

    @property
    def is_inferred(self) -> bool:
        return False

    @property
    def is_enumerable(self) -> bool:
        return True

    @property
    def is_ground(self) -> bool:
        return all(f.is_ground() for f in self._formulas)

    @property
    def is_graph(self) -> bool:
        """True when every formula is a triple: a predicate with two arguments."""
        return all(f.arity == 2 for f in self._formulas)

    @property
    def is_valid(self) -> bool:
        if self._valid is None:
            if self._schema is None:
                self._valid = True
            else:
                self._valid = self._schema.accepts_all(self._formulas)
        return self._valid

    @property
    def predicates(self) -> tuple[Term, ...]:
        """Distinct predicates, in first-occurrence order."""
        seen: dict[Term, None] = {}
        for predicate, _ in self._index:
            seen.setdefault(predicate)
        return tuple(seen)

    def get_variables(self) -> tuple[Variable, ...]:
        out: dict[Variable, None] = {}
        for formula in self._formulas:
            for var in formula.get_variables():
                out.setdefault(var)
        return tuple(out)

    def variables(self) -> set[Variable]:
        return set(self.get_variables())

    # -------------------------------------------------------------------------
    # Membership and search
    # -------------------------------------------------------------------------

    def contains(self, formula: Formula, with_about: bool = False):
        """Exact membership test.

        Args:
            formula: Formula to look for (no variable binding is performed)
            with_about: Also return the formula's metadata collection

        Returns:
            bool, or (bool, about) when with_about is True
        """
        present = formula in self._formulas
        if not with_about:
            return present
        if not present:
            return False, None
        return True, self.about_formula(formula)

    def about_formula(self, formula: Formula) -> ReadOnlyFormulaCollection:
        """Metadata attached to an individual formula (empty if none)."""
        meta = self._formula_about.get(formula)
        if meta is None:
            return ReadOnlyFormulaCollection(vocabulary=self._vocabulary)
        return meta

    def _candidates(self, pattern: Term) -> Iterable[Formula]:
        if isinstance(pattern, (AnyTerm, Variable)):
            return self._formulas
        if not isinstance(pattern, Formula):
            return ()
        if pattern.predicate.is_ground():
            return self._index.get((pattern.predicate, pattern.arity), {})
        return self._by_arity.get(pattern.arity, {})

    def find(self, pattern: Term) -> Iterator[Formula]:
        """Lazily yield formulas matching pattern.

        Each call returns a fresh iterator. Order follows insertion order
        and is stable for a given snapshot.

        Args:
            pattern: Formula possibly containing AnyTerm/Variable; AnyTerm
                alone matches every formula
        """
        candidates = self._candidates(pattern)
        if not self.is_read_only:
            candidates = list(candidates)
        elif len(candidates) >= get_settings().parallel_find_threshold:
            return iter(self._parallel_find(pattern, list(candidates)))
        return (f for f in candidates if pattern.matches(f))

    def _parallel_find(self, pattern: Term, candidates: list[Formula]) -> list[Formula]:
        settings = get_settings()
        size = max(1, len(candidates) // settings.max_workers + 1)
        chunks = [candidates[i:i + size] for i in range(0, len(candidates), size)]
        logger.debug(f"Partitioned find over {len(candidates)} candidates into {len(chunks)} chunks")
        with ThreadPoolExecutor(max_workers=settings.max_workers) as pool:
            parts = pool.map(lambda chunk: [f for f in chunk if pattern.matches(f)], chunks)
            return list(itertools.chain.from_iterable(parts))

    def count(self, target: Any = None) -> int:
        """Cardinality.

        Args:
            target: None for the whole collection, a pattern formula for the
                size of find(pattern), or a query for its result count
        """
        if target is None:
            return len(self._formulas)
        if hasattr(target, "count_rows"):
            return target.count_rows(self)
        return sum(1 for _ in self.find(target))

    # -------------------------------------------------------------------------
    # Queries and updates
    # -------------------------------------------------------------------------

    def query(self, query: Any, observer: Any = None) -> Any:
        """Evaluate a concluded query against this collection.

        Returns:
            bool for Ask, list of rows for Select, list of collections for
            Construct, a collection for Describe; a Subscription when an
            observer is supplied (Select/Construct only)
        """
        if observer is not None:
            return query.subscribe(self, observer)
        return query.execute(self)

    def apply(self, update: Update) -> ReadOnlyFormulaCollection:
        """Pure application of an update; this collection is unchanged."""
        return update.apply(self)

    def difference_from(self, other: ReadOnlyFormulaCollection) -> SimpleUpdate:
        """Delta turning this collection into other.

        Removals are formulas here but not in other, additions the converse,
        so self.apply(self.difference_from(other)) == other.
        """
        from .updates import SimpleUpdate

        removals = [f for f in self._formulas if f not in other]
        additions = [f for f in other if f not in self._formulas]
        return SimpleUpdate(
            ReadOnlyFormulaCollection(removals, vocabulary=self._vocabulary),
            ReadOnlyFormulaCollection(additions, vocabulary=self._vocabulary),
        )

    def clone(
        self,
        removals: Iterable[Formula] | None = None,
        additions: Iterable[Formula] | None = None,
    ) -> ReadOnlyFormulaCollection:
        """Copy, optionally as (self minus removals) plus additions."""
        return self._derive(self._overlay(removals, additions))

    def _overlay(self, removals, additions) -> list[Formula]:
        removed = set(removals) if removals is not None else set()
        result = [f for f in self._formulas if f not in removed]
        if additions is not None:
            present = set(result)
            for f in additions:
                if f not in present:
                    present.add(f)
                    result.append(f)
        return result

    def snapshot(self) -> ReadOnlyFormulaCollection:
        """Point-in-time read-only view."""
        return self

    def substitute(self, mapping: Mapping[Variable, Term]) -> ReadOnlyFormulaCollection:
        if not mapping or self.is_ground:
            return self.snapshot()
        return self._derive(f.substitute(mapping) for f in self._formulas)

    # -------------------------------------------------------------------------
    # Mutation (rejected)
    # -------------------------------------------------------------------------

    def add(self, item: Any, about: ReadOnlyFormulaCollection | None = None) -> bool:
        raise InvalidStateError(f"cannot add to read-only collection {self.term!r}")

    def remove(self, item: Any) -> bool:
        raise InvalidStateError(f"cannot remove from read-only collection {self.term!r}")

    # -------------------------------------------------------------------------
    # Python protocols
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._formulas)

    def __iter__(self) -> Iterator[Formula]:
        return iter(list(self._formulas) if not self.is_read_only else self._formulas)

    def __contains__(self, formula: object) -> bool:
        return formula in self._formulas

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReadOnlyFormulaCollection):
            return NotImplemented
        return self._formulas.keys() == other._formulas.keys()

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._formulas))
        return self._hash

    def __repr__(self) -> str:
        shown = ", ".join(repr(f) for f in itertools.islice(self._formulas, 5))
        more = ", ..." if len(self._formulas) > 5 else ""
        return f"{type(self).__name__}({{{shown}{more}}})"


class FormulaCollection(ReadOnlyFormulaCollection):
    """Mutable formula collection.

    Single writer: concurrent add/remove must be serialized by the caller.
    Queries evaluate against a snapshot taken when evaluation starts.

    Example:
        kb = FormulaCollection()
        kb.add(Formula(knows, alice, bob))     # True
        kb.add(Formula(knows, alice, bob))     # False, already present
        kb.remove(Formula(knows, bob, alice))  # False, absent
    """

    __hash__ = None  # type: ignore[assignment]

    @property
    def is_read_only(self) -> bool:
        return False

    def add(self, item: Any, about: ReadOnlyFormulaCollection | None = None) -> bool:
        """Add a formula or every formula of a collection/iterable.

        Args:
            item: Formula, collection, or iterable of formulas
            about: Metadata to attach (single formula only)

        Returns:
            True if the set changed

        Raises:
            SchemaViolationError: strict collection whose schema rejects
                one of the formulas; nothing is added
        """
        if isinstance(item, Formula):
            changed = self.change(additions=[item])
            if about is not None and item in self._formulas:
                self._formula_about[item] = about
            return changed
        return self.change(additions=item)

    def remove(self, item: Any) -> bool:
        """Remove a formula or every formula of a collection/iterable.

        Returns:
            True if the set changed
        """
        return self.change(removals=[item] if isinstance(item, Formula) else item)

    def change(self, removals: Iterable[Formula] = (), additions: Iterable[Formula] = ()) -> bool:
        """Remove, then add, as one mutation with a single notification.

        Additions are checked before anything is touched, so a rejected
        change leaves the collection as it was.

        Returns:
            True if the set changed

        Raises:
            MalformedTermError: some addition is not a formula
            SchemaViolationError: strict collection whose schema rejects
                some addition
        """
        removals = list(removals)
        additions = list(additions)
        for formula in additions:
            if not isinstance(formula, Formula):
                raise MalformedTermError(f"collections hold formulas, got {formula!r}", formula)
            if self._strict and self._schema is not None and not self._schema.accepts(formula):
                raise SchemaViolationError(f"{formula!r} does not satisfy the schema of {self.term!r}", formula)

        changed = False
        for formula in removals:
            changed = self._discard(formula) or changed
        for formula in additions:
            changed = self._insert(formula) or changed
        if changed:
            self._changed()
        return changed

    def clear(self) -> bool:
        return self.remove(list(self._formulas))

    def _changed(self) -> None:
        self._valid = None
        self._notify_changed()

    def clone(self, removals=None, additions=None) -> FormulaCollection:
        return FormulaCollection(
            self._overlay(removals, additions),
            about=self._about,
            schema=self._schema,
            vocabulary=self._vocabulary,
            formula_about=self._formula_about,
            strict=self._strict,
        )

    def snapshot(self) -> ReadOnlyFormulaCollection:
        return self._derive(self._formulas)

    def update(self, update: Update) -> None:
        """In-place application of an update."""
        update.update(self)

    def transaction(self) -> Transaction:
        """Start a transaction; leaving the block with an error rolls back.

        Example:
            with kb.transaction():
                kb.add(f1)
                kb.remove(f2)
        """
        return Transaction(self)


class Transaction:
    """Commit/rollback scope over a mutable collection."""

    def __init__(self, collection: FormulaCollection):
        self._collection = collection
        self._before = collection.snapshot()
        self._finished = False

    @property
    def is_finished(self) -> bool:
        return self._finished

    def commit(self) -> None:
        if self._finished:
            raise InvalidStateError("transaction already finished")
        self._finished = True

    def rollback(self) -> None:
        """Restore the state captured when the transaction began."""
        if self._finished:
            raise InvalidStateError("transaction already finished")
        self._finished = True
        delta = self._collection.difference_from(self._before)
        logger.debug(
            f"Rolling back {len(delta.additions)} removal(s), {len(delta.removals)} addition(s)"
        )
        delta.update(self._collection)

    def dispose(self) -> None:
        if not self._finished:
            self.rollback()

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._finished:
            return
        if exc_type is not None:
            self.rollback()
        else:
            self.commit()

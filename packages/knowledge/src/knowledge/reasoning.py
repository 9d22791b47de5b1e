"""
knowledge/reasoning.py - Forward-chaining reasoner with derivations

A Rule derives its conclusions for every way its premises match:

    symmetric = Rule(
        premises=[Formula(knows, x, y)],
        conclusions=[Formula(knows, y, x)],
        name="knows-symmetric",
    )

Rules can also be written as formulas over the rule vocabulary,
implies(Box(premises), Box(conclusions)), and loaded from a collection.

Reasoner.bind(collection) computes the deductive closure (semi-naive
forward chaining: each round only fires rules with at least one premise
matched by a formula derived in the previous round) and returns an
InferredFormulaCollection recording a Derivation for every inferred
formula. The closure is all-or-nothing: exceeding the iteration or size
bound raises ReasoningDivergentError and nothing is returned.

Example:
    reasoner = Reasoner().bind_rules([symmetric])
    inferred = await reasoner.bind(formulas)
    for d in inferred.derivations(Formula(knows, bob, alice)):
        print(d.explain())
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .collection import FormulaCollection, ReadOnlyFormulaCollection
from .config import KnowledgeSettings, get_settings
from .errors import MalformedTermError, ReasoningDivergentError
from .evaluation import solve
from .substitution import Substitution, bind_pattern, restrict
from .terms import Box, BoxType, Formula, Term, Variable
from .vocabulary import Vocabulary

logger = logging.getLogger(__name__)

_rule_ids = itertools.count(1)


# =============================================================================
# RULES
# =============================================================================


@dataclass(frozen=True)
class Rule:
    """Horn-style rule: all premises imply all conclusions.

    Every variable of a conclusion must occur in some premise.
    """

    premises: tuple[Formula, ...]
    conclusions: tuple[Formula, ...]
    name: str = ""

    def __init__(self, premises: Iterable[Formula], conclusions: Iterable[Formula], name: str | None = None):
        premises = tuple(premises)
        conclusions = tuple(conclusions)
        for f in premises + conclusions:
            if not isinstance(f, Formula):
                raise MalformedTermError(f"rules are made of formulas, got {f!r}", f)
        if not conclusions:
            raise MalformedTermError("rule has no conclusions")

        bound: set[Variable] = set()
        for p in premises:
            bound |= p.variables()
        for c in conclusions:
            free = c.variables() - bound
            if free:
                names = ", ".join(sorted(repr(v) for v in free))
                raise MalformedTermError(f"conclusion {c!r} uses {names} not bound by any premise", c)

        object.__setattr__(self, "premises", premises)
        object.__setattr__(self, "conclusions", conclusions)
        object.__setattr__(self, "name", name or f"rule-{next(_rule_ids)}")

    @property
    def variables(self) -> tuple[Variable, ...]:
        seen: dict[Variable, None] = {}
        for f in self.premises + self.conclusions:
            for v in f.get_variables():
                seen.setdefault(v)
        return tuple(seen)

    def to_formula(self, vocabulary: Vocabulary | None = None) -> Formula:
        """implies(Box(premises), Box(conclusions))."""
        vocab = vocabulary or Vocabulary()
        return Formula(
            vocab.implies,
            Box(BoxType.FORMULAS, ReadOnlyFormulaCollection(self.premises)),
            Box(BoxType.FORMULAS, ReadOnlyFormulaCollection(self.conclusions)),
        )

    def serialize(self, into: FormulaCollection) -> Formula:
        formula = self.to_formula(into.vocabulary)
        into.add(formula)
        return formula

    @classmethod
    def from_formula(cls, formula: Formula, vocabulary: Vocabulary | None = None, name: str | None = None) -> Rule:
        vocab = vocabulary or Vocabulary()
        if not isinstance(formula, Formula) or formula.predicate != vocab.implies or formula.arity != 2:
            raise MalformedTermError(f"not an implication: {formula!r}", formula)
        premises, conclusions = formula.arguments
        for side in (premises, conclusions):
            if not isinstance(side, Box) or side.box_type is not BoxType.FORMULAS:
                raise MalformedTermError(f"implication sides must be quoted formulas: {formula!r}", formula)
        return cls(premises.value, conclusions.value, name=name)

    def __repr__(self) -> str:
        body = ", ".join(repr(p) for p in self.premises)
        head = ", ".join(repr(c) for c in self.conclusions)
        return f"{self.name}: {body} => {head}"


def as_rules(source: Any, vocabulary: Vocabulary | None = None) -> list[Rule]:
    """Rules from Rule objects, implication formulas, or a collection of them."""
    if isinstance(source, (Rule, Formula)):
        source = [source]
    rules = []
    for item in source:
        rules.append(item if isinstance(item, Rule) else Rule.from_formula(item, vocabulary))
    return rules


# =============================================================================
# DERIVATIONS
# =============================================================================


@dataclass(frozen=True, eq=False)
class Derivation:
    """Why an inferred formula holds: a rule, its bindings, the premises used."""

    formula: Formula
    rule: Rule
    bindings: Mapping[Variable, Term] = field(default_factory=dict)
    premises: tuple[Formula, ...] = ()
    iteration: int = 0

    def key(self) -> tuple:
        return (self.formula, self.rule.name, frozenset(self.bindings.items()))

    def explain(self, indent: int = 0) -> str:
        """Human-readable account of this derivation step."""
        prefix = "  " * indent
        lines = [f"{prefix}✓ {self.formula!r}", f"{prefix}  by rule: {self.rule.name}"]
        if self.bindings:
            shown = ", ".join(f"{v!r} = {t!r}" for v, t in self.bindings.items())
            lines.append(f"{prefix}  with: {shown}")
        for premise in self.premises:
            lines.append(f"{prefix}  from: {premise!r}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "formula": repr(self.formula),
            "rule": self.rule.name,
            "bindings": {v.name: repr(t) for v, t in self.bindings.items()},
            "premises": [repr(p) for p in self.premises],
            "iteration": self.iteration,
        }

    def __repr__(self) -> str:
        return f"Derivation({self.formula!r} by {self.rule.name})"


# =============================================================================
# INFERRED COLLECTION
# =============================================================================


class InferredFormulaCollection(ReadOnlyFormulaCollection):
    """Deductive closure of a base collection, frozen at creation."""

    def __init__(
        self,
        formulas: Iterable[Formula],
        *,
        base: ReadOnlyFormulaCollection,
        reasoner: Reasoner,
        derivations: Mapping[Formula, tuple[Derivation, ...]] | None = None,
        **kwargs: Any,
    ):
        super().__init__(formulas, **kwargs)
        self._base = base
        self._reasoner = reasoner
        self._derivations = dict(derivations or {})

    @property
    def is_inferred(self) -> bool:
        return True

    @property
    def base(self) -> ReadOnlyFormulaCollection:
        return self._base

    @property
    def reasoner(self) -> Reasoner:
        return self._reasoner

    @property
    def inferred(self) -> tuple[Formula, ...]:
        """Formulas present here but not in the base."""
        return tuple(f for f in self._formulas if f not in self._base)

    def derivations(self, formula: Formula) -> tuple[Derivation, ...]:
        """Every derivation of formula; empty for base facts and absent formulas."""
        return self._derivations.get(formula, ())

    def explain(self, formula: Formula) -> str:
        """Derivation tree of formula down to base facts."""
        return "\n".join(self._explain(formula, 0, set()))

    def _explain(self, formula: Formula, indent: int, visiting: set[Formula]) -> Iterator[str]:
        prefix = "  " * indent
        derivations = self.derivations(formula)
        if not derivations:
            mark = "(fact)" if formula in self._base else "(absent)"
            yield f"{prefix}✓ {formula!r} {mark}" if formula in self else f"{prefix}✗ {formula!r} {mark}"
            return
        first = derivations[0]
        yield f"{prefix}✓ {formula!r}"
        yield f"{prefix}  by rule: {first.rule.name}"
        if formula in visiting:
            return
        visiting = visiting | {formula}
        for premise in first.premises:
            yield from self._explain(premise, indent + 1, visiting)


# =============================================================================
# REASONER
# =============================================================================


class Reasoner:
    """Immutable rule set plus closure computation.

    Example:
        reasoner = Reasoner(settings=KnowledgeSettings(max_iterations=50))
        reasoner = reasoner.bind_rules(rules)   # new instance
        inferred = reasoner.infer(formulas)     # synchronous
        inferred = await reasoner.bind(formulas)
    """

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        settings: KnowledgeSettings | None = None,
        vocabulary: Vocabulary | None = None,
    ):
        self._rules: tuple[Rule, ...] = tuple(rules)
        self._settings = settings
        self._vocabulary = vocabulary

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    @property
    def configuration(self) -> KnowledgeSettings:
        """Settings bounding closure computation."""
        return self._settings or get_settings()

    def bind_rules(self, rules: Any) -> Reasoner:
        """New reasoner with rules added.

        Args:
            rules: Rule, implication formula, or an iterable / collection
                of either
        """
        added = as_rules(rules, self._vocabulary)
        return Reasoner(self._rules + tuple(added), self._settings, self._vocabulary)

    async def bind(self, collection: ReadOnlyFormulaCollection) -> InferredFormulaCollection:
        """Compute the closure of collection off the event loop.

        Cancelling the awaiting task stops the computation at the next
        round; nothing partial is returned.
        """
        snapshot = collection.snapshot()
        cancelled = threading.Event()
        try:
            return await asyncio.to_thread(self.infer, snapshot, cancelled)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    def infer(
        self,
        collection: ReadOnlyFormulaCollection,
        cancelled: threading.Event | None = None,
    ) -> InferredFormulaCollection:
        """Compute the closure of collection synchronously.

        Raises:
            ReasoningDivergentError: iteration or size bound exceeded
        """
        settings = self.configuration
        base = collection.snapshot()
        working = FormulaCollection(base, vocabulary=base.vocabulary)
        derivations: dict[Formula, dict[tuple, Derivation]] = {}

        delta: list[Formula] = list(base)
        iterations = 0
        first = True
        while first or delta:
            if cancelled is not None and cancelled.is_set():
                raise asyncio.CancelledError()
            iterations += 1
            if iterations > settings.max_iterations:
                raise ReasoningDivergentError(
                    f"no fixpoint after {settings.max_iterations} iterations",
                    iterations=iterations - 1,
                    derived=len(working) - len(base),
                )

            new: dict[Formula, None] = {}
            delta_view = ReadOnlyFormulaCollection(delta)
            for rule in self._rules:
                for row in self._fire(rule, delta_view, working, first):
                    bindings = restrict(row, rule.variables)
                    premises = tuple(p.substitute(row) for p in rule.premises)
                    for conclusion in rule.conclusions:
                        formula = conclusion.substitute(row)
                        if formula in base:
                            continue
                        derivation = Derivation(formula, rule, bindings, premises, iterations)
                        derivations.setdefault(formula, {}).setdefault(derivation.key(), derivation)
                        if formula not in working:
                            new.setdefault(formula)

            first = False
            if new:
                working.add(list(new))
            logger.debug(f"Iteration {iterations}: {len(new)} new formula(s)")
            if len(working) > settings.max_formulas:
                raise ReasoningDivergentError(
                    f"closure exceeded {settings.max_formulas} formulas",
                    iterations=iterations,
                    derived=len(working) - len(base),
                )
            delta = list(new)

        logger.info(
            f"Reasoner derived {len(working) - len(base)} formula(s) "
            f"from {len(base)} in {iterations} iteration(s)"
        )
        return InferredFormulaCollection(
            working,
            base=base,
            reasoner=self,
            derivations={f: tuple(d.values()) for f, d in derivations.items()},
            vocabulary=base.vocabulary,
            about=base.about,
            schema=base.schema,
        )

    def _fire(
        self,
        rule: Rule,
        delta: ReadOnlyFormulaCollection,
        working: FormulaCollection,
        first: bool,
    ) -> Iterator[Substitution]:
        """Premise matches using at least one formula from delta."""
        if not rule.premises:
            if first:
                yield {}
            return
        if first:
            yield from solve(working, rule.premises, {})
            return
        for i, premise in enumerate(rule.premises):
            rest = rule.premises[:i] + rule.premises[i + 1:]
            for formula in delta.find(premise):
                row = bind_pattern(premise, formula)
                if row is not None:
                    yield from solve(working, rest, row)

    def __repr__(self) -> str:
        return f"Reasoner({len(self._rules)} rules)"

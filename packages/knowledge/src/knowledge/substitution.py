"""
knowledge/substitution.py - Substitutions and one-way pattern binding

A substitution maps Variables to Terms. The query evaluator uses partial
substitutions as result rows ("bindings"), so this module provides the
row algebra as well:

- bind_pattern(pattern, term, row): extend row so that pattern·row == term
- compatible(a, b): rows agree on every shared variable
- merge(a, b): union of two compatible rows
- compose(theta1, theta2): (theta1 ∘ theta2)
- instantiate(term, row, strict): substitute and optionally require ground
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping

from .errors import UnboundVariableError
from .terms import AnyTerm, Box, BoxType, Formula, Term, Variable

# Type alias for substitution
Substitution = dict[Variable, Term]


def bind_pattern(
    pattern: Term,
    term: Term,
    row: Mapping[Variable, Term] | None = None,
) -> Substitution | None:
    """One-way match of pattern against term, consistent with row.

    Variables in pattern bind to the corresponding subterm of term; a
    variable already bound in row must be bound to an equal term. AnyTerm
    matches without binding. Variables occurring in term are treated as
    constants.

    Returns:
        Extended copy of row, or None if pattern does not match

    Example:
        # knows(?x, bob) against knows(alice, bob)
        bind_pattern(Formula(knows, Variable("x"), bob), Formula(knows, alice, bob))
        # {?x: alice}
    """
    theta: Substitution = dict(row) if row else {}
    if _bind(pattern, term, theta):
        return theta
    return None


def _bind(pattern: Term, term: Term, theta: Substitution) -> bool:
    if isinstance(pattern, AnyTerm):
        return True

    if isinstance(pattern, Variable):
        bound = theta.get(pattern)
        if bound is None:
            theta[pattern] = term
            return True
        return bound == term

    if isinstance(pattern, Formula):
        if not isinstance(term, Formula) or pattern.arity != term.arity:
            return False
        if not _bind(pattern.predicate, term.predicate, theta):
            return False
        for p_arg, t_arg in zip(pattern.arguments, term.arguments):
            if not _bind(p_arg, t_arg, theta):
                return False
        return True

    if isinstance(pattern, Box) and pattern.box_type is BoxType.FORMULAS and not pattern.is_ground():
        return pattern.substitute(theta) == term

    return pattern == term


def compatible(a: Mapping[Variable, Term], b: Mapping[Variable, Term]) -> bool:
    """True if a and b agree on every variable they share."""
    if len(b) < len(a):
        a, b = b, a
    for var, value in a.items():
        other = b.get(var)
        if other is not None and other != value:
            return False
    return True


def merge(a: Mapping[Variable, Term], b: Mapping[Variable, Term]) -> Substitution:
    """Union of two compatible rows."""
    merged = dict(a)
    merged.update(b)
    return merged


def shares_variables(a: Mapping[Variable, Term], b: Mapping[Variable, Term]) -> bool:
    return any(var in b for var in a)


def compose(theta1: Mapping[Variable, Term], theta2: Mapping[Variable, Term]) -> Substitution:
    """Compose two substitutions.

    (θ1 ∘ θ2)(t) = θ1(θ2(t))

    Args:
        theta1: First substitution (applied last)
        theta2: Second substitution (applied first)
    """
    result: Substitution = {var: term.substitute(theta1) for var, term in theta2.items()}
    for var, term in theta1.items():
        result.setdefault(var, term)
    return result


def restrict(row: Mapping[Variable, Term], variables: Iterable[Variable]) -> Substitution:
    """Project row onto variables, omitting unbound ones."""
    return {v: row[v] for v in variables if v in row}


def instantiate(term: Term, row: Mapping[Variable, Term], strict: bool = False) -> Term:
    """Apply row to term.

    Args:
        term: Term to instantiate
        row: Variable bindings
        strict: Raise UnboundVariableError unless the result is ground

    Raises:
        UnboundVariableError: strict and some variable stayed free
    """
    result = term.substitute(row)
    if strict and not result.is_ground():
        missing = result.get_variables()
        if not missing:
            raise UnboundVariableError(f"wildcard cannot be instantiated in {term!r}")
        raise UnboundVariableError(
            f"no binding for {', '.join(repr(v) for v in missing)} in {term!r}",
            missing[0],
        )
    return result

"""
knowledge/terms.py - Term Algebra for the Formula Store

Implements the closed set of term variants every other module builds on:
- AnyTerm: wildcard, matches anything
- Blank: anonymous identifier scoped to a collection's label namespace
- Uri: global identifier
- Box: tagged scalar (boolean, sized integers, floats, decimal, datetime,
  string, language-tagged/typed literal) or a quoted formula collection
- Variable: named placeholder (e.g. ?x)
- Formula: predicate applied to an ordered argument list of any arity

Formulas generalize RDF triples: knows(alice, bob) is a binary formula,
f(1, 2, 3) a ternary one. Terms are immutable and compared structurally.

Matching (Term.matches) only tests compatibility and never binds; binding
happens through Term.substitute or the query evaluator.
"""
from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from .errors import MalformedTermError


class TermType(Enum):
    """Discriminator for the closed term union."""

    ANY = "any"
    BLANK = "blank"
    URI = "uri"
    BOX = "box"
    VARIABLE = "variable"
    FORMULA = "formula"


class BoxType(Enum):
    """Tags a Box may carry."""

    BOOLEAN = "boolean"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    DECIMAL = "decimal"
    DATETIME = "datetime"
    STRING = "string"
    LITERAL = "literal"  # language-tagged and/or datatyped lexical form
    FORMULAS = "formulas"  # quoted formula collection

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_RANGES

    @property
    def is_numeric(self) -> bool:
        return self.is_integer or self in (BoxType.FLOAT32, BoxType.FLOAT64, BoxType.DECIMAL)


_INTEGER_RANGES: dict[BoxType, tuple[int, int]] = {
    BoxType.INT8: (-(2**7), 2**7 - 1),
    BoxType.INT16: (-(2**15), 2**15 - 1),
    BoxType.INT32: (-(2**31), 2**31 - 1),
    BoxType.INT64: (-(2**63), 2**63 - 1),
    BoxType.UINT8: (0, 2**8 - 1),
    BoxType.UINT16: (0, 2**16 - 1),
    BoxType.UINT32: (0, 2**32 - 1),
    BoxType.UINT64: (0, 2**64 - 1),
}


class Term(ABC):
    """Base class for all term variants."""

    term_type: ClassVar[TermType]

    @abstractmethod
    def is_ground(self) -> bool:
        """Return True if the term contains no free variables and no wildcard."""

    @abstractmethod
    def matches(self, other: Term) -> bool:
        """Return True if other is compatible with this term used as a pattern."""

    @abstractmethod
    def substitute(self, mapping: Mapping[Variable, Term]) -> Term:
        """Replace free variables with their images in mapping."""

    @abstractmethod
    def visit(self, visitor: TermVisitor) -> Any:
        pass

    @abstractmethod
    def sort_key(self) -> tuple:
        """Total ordering key used by ORDER BY and min/max aggregates."""

    def _collect_variables(self, out: dict[Variable, None]) -> None:
        pass

    def _has_wildcard(self) -> bool:
        return False

    def get_variables(self) -> tuple[Variable, ...]:
        """Free variables in first-occurrence order."""
        out: dict[Variable, None] = {}
        self._collect_variables(out)
        return tuple(out)

    def variables(self) -> set[Variable]:
        """Set of free variables."""
        return set(self.get_variables())


@dataclass(frozen=True)
class AnyTerm(Term):
    """Wildcard. Matches any term and never binds."""

    term_type: ClassVar[TermType] = TermType.ANY

    def is_ground(self) -> bool:
        return False

    def _has_wildcard(self) -> bool:
        return True

    def matches(self, other: Term) -> bool:
        return True

    def substitute(self, mapping: Mapping[Variable, Term]) -> Term:
        return self

    def visit(self, visitor: TermVisitor) -> Any:
        return visitor.visit_any(self)

    def sort_key(self) -> tuple:
        return (0,)

    def __repr__(self) -> str:
        return "*"


ANY = AnyTerm()


@dataclass(frozen=True)
class Blank(Term):
    """Anonymous identifier.

    Two blanks are equal only when both label and scope (the collection
    namespace the label was minted in) agree.
    """

    label: str
    scope: str | None = None

    term_type: ClassVar[TermType] = TermType.BLANK

    def __post_init__(self):
        if not isinstance(self.label, str) or not self.label:
            raise MalformedTermError(f"Blank label must be a non-empty string, got {self.label!r}")

    def is_ground(self) -> bool:
        return True

    def matches(self, other: Term) -> bool:
        return self == other

    def substitute(self, mapping: Mapping[Variable, Term]) -> Term:
        return self

    def visit(self, visitor: TermVisitor) -> Any:
        return visitor.visit_blank(self)

    def sort_key(self) -> tuple:
        return (1, self.scope or "", self.label)

    def __repr__(self) -> str:
        return f"_:{self.label}"


@dataclass(frozen=True)
class Uri(Term):
    """Global identifier."""

    value: str

    term_type: ClassVar[TermType] = TermType.URI

    def __post_init__(self):
        if not isinstance(self.value, str) or not self.value:
            raise MalformedTermError(f"Uri must be a non-empty string, got {self.value!r}")

    def is_ground(self) -> bool:
        return True

    def matches(self, other: Term) -> bool:
        return self == other

    def substitute(self, mapping: Mapping[Variable, Term]) -> Term:
        return self

    def visit(self, visitor: TermVisitor) -> Any:
        return visitor.visit_uri(self)

    def sort_key(self) -> tuple:
        return (2, self.value)

    @property
    def local_name(self) -> str:
        for sep in ("#", "/", ":"):
            if sep in self.value:
                return self.value.rsplit(sep, 1)[1] or self.value
        return self.value

    def __repr__(self) -> str:
        return f"<{self.value}>"


@dataclass(frozen=True)
class Box(Term):
    """Tagged scalar or quoted formula collection.

    For BoxType.FORMULAS the value is a read-only formula collection and
    `bound` lists variables local to the quotation; those are not free in
    the enclosing term and are renamed apart on substitution when they
    would capture an incoming variable.

    Example:
        Box(BoxType.INT32, 42)
        Box(BoxType.LITERAL, "chat", language="fr")
    """

    box_type: BoxType
    value: Any
    language: str | None = None
    datatype: Uri | None = None
    bound: frozenset = field(default_factory=frozenset)

    term_type: ClassVar[TermType] = TermType.BOX

    def __post_init__(self):
        value = _check_box_value(self.box_type, self.value)
        object.__setattr__(self, "value", value)
        if self.box_type is not BoxType.LITERAL and (self.language or self.datatype):
            raise MalformedTermError("language/datatype are only valid on LITERAL boxes", self)
        if self.bound and self.box_type is not BoxType.FORMULAS:
            raise MalformedTermError("only FORMULAS boxes may bind variables", self)
        object.__setattr__(self, "bound", frozenset(self.bound))

    def is_ground(self) -> bool:
        if self.box_type is not BoxType.FORMULAS:
            return True
        return not self.get_variables() and not self._has_wildcard()

    def _has_wildcard(self) -> bool:
        return self.box_type is BoxType.FORMULAS and any(f._has_wildcard() for f in self.value)

    def _collect_variables(self, out: dict[Variable, None]) -> None:
        if self.box_type is BoxType.FORMULAS:
            for var in self.value.get_variables():
                if var not in self.bound:
                    out.setdefault(var)

    def matches(self, other: Term) -> bool:
        if self.box_type is BoxType.FORMULAS and self.get_variables():
            # Quoted pattern: decided by the binding step
            return isinstance(other, Box) and other.box_type is BoxType.FORMULAS
        return self == other

    def substitute(self, mapping: Mapping[Variable, Term]) -> Term:
        if self.box_type is not BoxType.FORMULAS or not mapping:
            return self
        free = self.variables()
        relevant = {v: t for v, t in mapping.items() if v in free}
        if not relevant:
            return self

        inner = self.value
        bound = set(self.bound)
        incoming: set[Variable] = set()
        for t in relevant.values():
            incoming.update(t.variables())
        clashes = bound & incoming
        if clashes:
            taken = {v.name for v in inner.get_variables()}
            taken |= {v.name for v in incoming} | {v.name for v in relevant}
            renaming: dict[Variable, Term] = {}
            for var in sorted(clashes, key=lambda v: v.name):
                fresh = _fresh_name(var.name, taken)
                taken.add(fresh)
                renaming[var] = Variable(fresh)
            inner = inner.substitute(renaming)
            bound = (bound - clashes) | set(renaming.values())

        return Box(BoxType.FORMULAS, inner.substitute(relevant), bound=frozenset(bound))

    def visit(self, visitor: TermVisitor) -> Any:
        return visitor.visit_box(self)

    def sort_key(self) -> tuple:
        if self.box_type.is_numeric:
            return (3, 0, self.value)
        if self.box_type is BoxType.BOOLEAN:
            return (3, 1, self.value)
        if self.box_type in (BoxType.STRING, BoxType.LITERAL):
            dt = self.datatype.value if self.datatype else ""
            return (3, 2, self.value, self.language or "", dt)
        if self.box_type is BoxType.DATETIME:
            return (3, 3, self.value.isoformat())
        return (3, 4, repr(self.value))

    @property
    def python_value(self) -> Any:
        return self.value

    def __repr__(self) -> str:
        if self.box_type in (BoxType.STRING, BoxType.LITERAL):
            text = f'"{self.value}"'
            if self.language:
                text += f"@{self.language}"
            if self.datatype:
                text += f"^^{self.datatype!r}"
            return text
        if self.box_type is BoxType.FORMULAS:
            return "{" + ", ".join(repr(f) for f in self.value) + "}"
        if self.box_type is BoxType.DATETIME:
            return self.value.isoformat()
        return str(self.value).lower() if self.box_type is BoxType.BOOLEAN else str(self.value)


def _fresh_name(base: str, taken: set[str]) -> str:
    for i in itertools.count(1):
        candidate = f"{base}_{i}"
        if candidate not in taken:
            return candidate
    raise AssertionError("unreachable")


def _check_box_value(box_type: BoxType, value: Any) -> Any:
    if box_type is BoxType.BOOLEAN:
        if not isinstance(value, bool):
            raise MalformedTermError(f"boolean box needs a bool, got {value!r}")
        return value
    if box_type.is_integer:
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedTermError(f"{box_type.value} box needs an int, got {value!r}")
        low, high = _INTEGER_RANGES[box_type]
        if not low <= value <= high:
            raise MalformedTermError(f"{value} out of range for {box_type.value}")
        return value
    if box_type in (BoxType.FLOAT32, BoxType.FLOAT64):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedTermError(f"{box_type.value} box needs a number, got {value!r}")
        return float(value)
    if box_type is BoxType.DECIMAL:
        if isinstance(value, bool):
            raise MalformedTermError(f"decimal box needs a number, got {value!r}")
        try:
            return Decimal(value) if not isinstance(value, float) else Decimal(str(value))
        except (ArithmeticError, ValueError, TypeError) as e:
            raise MalformedTermError(f"decimal box needs a number, got {value!r}") from e
    if box_type is BoxType.DATETIME:
        if not isinstance(value, datetime):
            raise MalformedTermError(f"datetime box needs a datetime, got {value!r}")
        return value
    if box_type in (BoxType.STRING, BoxType.LITERAL):
        if not isinstance(value, str):
            raise MalformedTermError(f"{box_type.value} box needs a str, got {value!r}")
        return value
    if box_type is BoxType.FORMULAS:
        if not hasattr(value, "find") or not hasattr(value, "substitute"):
            raise MalformedTermError(f"formulas box needs a formula collection, got {value!r}")
        if not value.is_read_only:
            value = value.snapshot()
        return value
    raise MalformedTermError(f"unknown box type {box_type!r}")


@dataclass(frozen=True)
class Variable(Term):
    """Named placeholder.

    Example:
        x = Variable("x")
    """

    name: str

    term_type: ClassVar[TermType] = TermType.VARIABLE

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise MalformedTermError(f"Variable name must be a non-empty string, got {self.name!r}")

    def is_ground(self) -> bool:
        return False

    def _collect_variables(self, out: dict[Variable, None]) -> None:
        out.setdefault(self)

    def matches(self, other: Term) -> bool:
        return True

    def substitute(self, mapping: Mapping[Variable, Term]) -> Term:
        return mapping.get(self, self)

    def visit(self, visitor: TermVisitor) -> Any:
        return visitor.visit_variable(self)

    def sort_key(self) -> tuple:
        return (4, self.name)

    def __repr__(self) -> str:
        return f"?{self.name}"


@dataclass(frozen=True)
class Formula(Term):
    """Predicate applied to an ordered argument list.

    Raw Python values given as predicate or arguments are converted with
    as_term, so Formula(knows, alice, "Bob") boxes "Bob" as a string.

    Example:
        knows = Uri("http://xmlns.com/foaf/0.1/knows")
        f = Formula(knows, Uri("urn:alice"), Uri("urn:bob"))
        f.arity  # 2
    """

    predicate: Term
    arguments: tuple[Term, ...] = field(default_factory=tuple)

    term_type: ClassVar[TermType] = TermType.FORMULA

    def __init__(self, predicate: Any, *arguments: Any):
        object.__setattr__(self, "predicate", as_term(predicate))
        object.__setattr__(self, "arguments", tuple(as_term(a) for a in arguments))

    @property
    def arity(self) -> int:
        return len(self.arguments)

    def __len__(self) -> int:
        return len(self.arguments)

    def __getitem__(self, index: int) -> Term:
        return self.arguments[index]

    def is_ground(self) -> bool:
        return self.predicate.is_ground() and all(a.is_ground() for a in self.arguments)

    def _collect_variables(self, out: dict[Variable, None]) -> None:
        self.predicate._collect_variables(out)
        for arg in self.arguments:
            arg._collect_variables(out)

    def _has_wildcard(self) -> bool:
        return any(t._has_wildcard() for t in self.terms())

    def matches(self, other: Term) -> bool:
        if not isinstance(other, Formula) or other.arity != self.arity:
            return False
        if not self.predicate.matches(other.predicate):
            return False
        return all(a.matches(b) for a, b in zip(self.arguments, other.arguments))

    def substitute(self, mapping: Mapping[Variable, Term]) -> Formula:
        if not mapping or self.is_ground():
            return self
        return Formula(
            self.predicate.substitute(mapping),
            *(a.substitute(mapping) for a in self.arguments),
        )

    def terms(self) -> Iterable[Term]:
        """Predicate followed by the arguments."""
        yield self.predicate
        yield from self.arguments

    def mentions(self, term: Term) -> bool:
        """True if term occurs as predicate or argument, at any depth."""
        for t in self.terms():
            if t == term:
                return True
            if isinstance(t, Formula) and t.mentions(term):
                return True
        return False

    def visit(self, visitor: TermVisitor) -> Any:
        return visitor.visit_formula(self)

    def sort_key(self) -> tuple:
        return (5, self.predicate.sort_key(), tuple(a.sort_key() for a in self.arguments))

    def __repr__(self) -> str:
        pred = self.predicate.local_name if isinstance(self.predicate, Uri) else repr(self.predicate)
        if not self.arguments:
            return f"{pred}()"
        return f"{pred}({', '.join(_short(a) for a in self.arguments)})"


def _short(term: Term) -> str:
    return term.local_name if isinstance(term, Uri) else repr(term)


class TermVisitor:
    """Double-dispatch visitor over the term union.

    Subclasses override the visit_* methods they care about; the defaults
    return None.
    """

    def visit_any(self, term: AnyTerm) -> Any:
        return None

    def visit_blank(self, term: Blank) -> Any:
        return None

    def visit_uri(self, term: Uri) -> Any:
        return None

    def visit_box(self, term: Box) -> Any:
        return None

    def visit_variable(self, term: Variable) -> Any:
        return None

    def visit_formula(self, term: Formula) -> Any:
        return None


def box(value: Any) -> Box:
    """Box a Python scalar with the narrowest natural tag.

    bool -> BOOLEAN, int -> INT64 (UINT64 / DECIMAL when larger),
    float -> FLOAT64, Decimal -> DECIMAL, datetime -> DATETIME,
    str -> STRING, formula collection -> FORMULAS.
    """
    if isinstance(value, bool):
        return Box(BoxType.BOOLEAN, value)
    if isinstance(value, int):
        if _INTEGER_RANGES[BoxType.INT64][0] <= value <= _INTEGER_RANGES[BoxType.INT64][1]:
            return Box(BoxType.INT64, value)
        if 0 <= value <= _INTEGER_RANGES[BoxType.UINT64][1]:
            return Box(BoxType.UINT64, value)
        return Box(BoxType.DECIMAL, value)
    if isinstance(value, float):
        return Box(BoxType.FLOAT64, value)
    if isinstance(value, Decimal):
        return Box(BoxType.DECIMAL, value)
    if isinstance(value, datetime):
        return Box(BoxType.DATETIME, value)
    if isinstance(value, str):
        return Box(BoxType.STRING, value)
    if hasattr(value, "find") and hasattr(value, "substitute"):
        return Box(BoxType.FORMULAS, value)
    raise MalformedTermError(f"cannot box value of type {type(value).__name__}: {value!r}")


def literal(value: str, language: str | None = None, datatype: Uri | None = None) -> Box:
    """Language-tagged or datatyped literal."""
    return Box(BoxType.LITERAL, value, language=language, datatype=datatype)


def as_term(value: Any) -> Term:
    """Return value unchanged if it is a Term, otherwise box it."""
    if isinstance(value, Term):
        return value
    if value is None:
        raise MalformedTermError("None is not a term")
    return box(value)

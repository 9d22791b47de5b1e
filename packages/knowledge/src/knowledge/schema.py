"""
knowledge/schema.py - Schemas and validation

A Schema is a read-only formula collection over the schema vocabulary:

    declares(p)                 p may be used with any arity
    declares(p, n)              p may be used with arity n (repeatable)
    argumentType(p, i, T)       argument i (0-based) of p must be of type T

T is one of schema:Any, schema:Uri, schema:Blank, schema:Box,
schema:Variable, schema:Formula, or an XSD datatype (a Box with the
matching tag, or a literal carrying that datatype). Several argumentType
formulas for the same position are alternatives. Declaring schema:Any as
predicate makes the declaration apply to every predicate.

Variables and wildcards satisfy every type constraint, so pattern and
template formulas validate against the schema of the data they describe.
An empty schema accepts everything.

Schemas can be loaded from YAML documents:

    namespace: http://xmlns.com/foaf/0.1/
    predicates:
      - name: knows
        arity: 2
        arguments: [Uri, Uri]
      - uri: http://example.org/age
        arity: 2
        arguments: [Uri, int]
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .collection import FormulaCollection, ReadOnlyFormulaCollection
from .terms import AnyTerm, Blank, Box, BoxType, Formula, Term, Uri, Variable, box
from .vocabulary import _BOX_DATATYPES, SCHEMA_NS, Vocabulary

logger = logging.getLogger(__name__)

_STRUCTURAL_TYPES = ("Any", "Uri", "Blank", "Box", "Variable", "Formula")


# =============================================================================
# DOCUMENT MODELS
# =============================================================================


class PredicateDeclaration(BaseModel):
    """One predicate in a schema document."""

    name: str | None = Field(default=None, min_length=1, description="Local name under the document namespace")
    uri: str | None = Field(default=None, min_length=1, description="Absolute predicate Uri")
    arity: int | None = Field(default=None, ge=0, description="Required arity; any arity when omitted")
    arguments: list[str] = Field(default_factory=list, description="Type per argument position")

    @field_validator("arguments")
    @classmethod
    def check_argument_types(cls, v: list[str]) -> list[str]:
        known = set(_STRUCTURAL_TYPES) | set(_BOX_DATATYPES.values())
        for name in v:
            if name not in known and ":" not in name:
                raise ValueError(f"unknown argument type {name!r}")
        return v

    @model_validator(mode="after")
    def check_shape(self) -> PredicateDeclaration:
        if (self.name is None) == (self.uri is None):
            raise ValueError("exactly one of name or uri is required")
        if self.arity is not None and len(self.arguments) > self.arity:
            raise ValueError(f"{len(self.arguments)} argument types for arity {self.arity}")
        return self

    model_config = {"frozen": True}


class SchemaDocument(BaseModel):
    """A schema as stored in YAML/JSON."""

    schema_version: str = Field(default="1.0.0", pattern=r"^\d+\.\d+\.\d+$")
    namespace: str | None = None
    description: str | None = None
    predicates: list[PredicateDeclaration] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_namespace(self) -> SchemaDocument:
        if self.namespace is None and any(p.name is not None for p in self.predicates):
            raise ValueError("predicates given by name need a namespace")
        return self


# =============================================================================
# SCHEMA
# =============================================================================


class Schema(ReadOnlyFormulaCollection):
    """Predicate, arity and argument-type declarations.

    Example:
        schema = (
            Schema()
            .declare(knows, 2, ["Uri", "Uri"])
            .declare(age, 2, ["Uri", "int"])
        )
        schema.accepts(Formula(knows, alice, bob))   # True
        schema.accepts(Formula(knows, alice))        # False
    """

    def __init__(self, formulas: Iterable[Formula] = (), *, vocabulary: Vocabulary | None = None, term: Term | None = None):
        super().__init__(formulas, vocabulary=vocabulary, term=term)
        vocab = self.vocabulary
        self._declares = vocab.schema.declares
        self._argument_type = vocab.schema.argumentType
        self._any = vocab.schema.Any

        # predicate -> permitted arities (None = any)
        self._arities: dict[Term, set[int | None]] = defaultdict(set)
        # (predicate, position) -> permitted types
        self._types: dict[tuple[Term, int], set[Term]] = defaultdict(set)

        for formula in self._formulas:
            if formula.predicate == self._declares:
                self._compile_declaration(formula)
            elif formula.predicate == self._argument_type and formula.arity == 3:
                predicate, position, type_term = formula.arguments
                if isinstance(position, Box) and position.box_type.is_integer:
                    self._types[(predicate, position.value)].add(type_term)

    def _compile_declaration(self, formula: Formula) -> None:
        if formula.arity == 1:
            self._arities[formula[0]].add(None)
        elif formula.arity == 2 and isinstance(formula[1], Box) and formula[1].box_type.is_integer:
            self._arities[formula[0]].add(formula[1].value)
        else:
            logger.warning(f"Ignoring malformed schema declaration {formula!r}")

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def declare(self, predicate: Term, arity: int | None = None, argument_types: Iterable[Any] = ()) -> Schema:
        """New schema with an additional predicate declaration.

        Args:
            predicate: Predicate term (schema:Any for every predicate)
            arity: Permitted arity; any arity when None
            argument_types: Per-position types, as Uri terms or names
                ("Uri", "Box", "int", "string", ...)
        """
        added = [
            Formula(self._declares, predicate) if arity is None
            else Formula(self._declares, predicate, box(arity))
        ]
        for position, type_ in enumerate(argument_types):
            added.append(Formula(self._argument_type, predicate, box(position), self.type_term(type_)))
        return Schema(list(self._formulas) + added, vocabulary=self._vocabulary)

    def merge(self, other: Schema) -> Schema:
        """Schema accepting what either schema accepts."""
        return Schema(list(self._formulas) + list(other), vocabulary=self._vocabulary)

    def type_term(self, type_: Any) -> Term:
        """Resolve a type name ("Uri", "int", full Uri string) to its term."""
        if isinstance(type_, Term):
            return type_
        if type_ in _STRUCTURAL_TYPES:
            return self.vocabulary.schema[type_]
        if type_ in _BOX_DATATYPES.values():
            return self.vocabulary.xsd[type_]
        return Uri(type_)

    @classmethod
    def from_document(cls, document: SchemaDocument, vocabulary: Vocabulary | None = None) -> Schema:
        schema = cls(vocabulary=vocabulary)
        for declaration in document.predicates:
            predicate = Uri(declaration.uri or document.namespace + declaration.name)
            schema = schema.declare(predicate, declaration.arity, declaration.arguments)
        logger.debug(f"Loaded schema with {len(document.predicates)} predicate declaration(s)")
        return schema

    @classmethod
    def from_dict(cls, raw: dict, vocabulary: Vocabulary | None = None) -> Schema:
        return cls.from_document(SchemaDocument(**raw), vocabulary)

    @classmethod
    def from_yaml(cls, path: str | Path, vocabulary: Vocabulary | None = None) -> Schema:
        """Load a schema document from a YAML file."""
        path = Path(path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        schema = cls.from_dict(raw, vocabulary)
        logger.info(f"Loaded schema from {path}")
        return schema

    def to_document(self) -> SchemaDocument:
        predicates = []
        for predicate, arities in self._arities.items():
            if not isinstance(predicate, Uri):
                continue
            for arity in sorted(arities, key=lambda a: -1 if a is None else a):
                positions = range(arity) if arity is not None else range(self._max_position(predicate) + 1)
                arguments = [self._type_name(predicate, i) for i in positions]
                while arguments and arguments[-1] == "Any":
                    arguments.pop()
                predicates.append(PredicateDeclaration(uri=predicate.value, arity=arity, arguments=arguments))
        return SchemaDocument(predicates=predicates)

    def _max_position(self, predicate: Term) -> int:
        return max((i for (p, i) in self._types if p == predicate), default=-1)

    def _type_name(self, predicate: Term, position: int) -> str:
        types = self._types.get((predicate, position))
        if not types:
            return "Any"
        type_term = next(iter(types))
        if type_term in self.vocabulary.schema:
            return type_term.value[len(SCHEMA_NS):]
        box_type = self.vocabulary.box_type_of(type_term)
        if box_type is not None:
            return _BOX_DATATYPES[box_type]
        return type_term.value

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        return not self._arities

    @property
    def declared_predicates(self) -> tuple[Term, ...]:
        return tuple(self._arities)

    def accepts(self, formula: Term) -> bool:
        """True if some declaration permits formula."""
        if self.is_empty:
            return True
        if not isinstance(formula, Formula):
            return False
        if isinstance(formula.predicate, (Variable, AnyTerm)):
            keys: Iterable[Term] = self._arities
        else:
            keys = (formula.predicate, self._any)
        return any(self._declaration_accepts(key, formula) for key in keys if key in self._arities)

    def _declaration_accepts(self, key: Term, formula: Formula) -> bool:
        arities = self._arities[key]
        if None not in arities and formula.arity not in arities:
            return False
        for position, argument in enumerate(formula.arguments):
            types = self._types.get((key, position))
            if types and not any(self._has_type(argument, t) for t in types):
                return False
        return True

    def _has_type(self, term: Term, type_term: Term) -> bool:
        if isinstance(term, (Variable, AnyTerm)) or type_term == self._any:
            return True
        s = self.vocabulary.schema
        structural = {
            s.Uri: Uri,
            s.Blank: Blank,
            s.Box: Box,
            s.Variable: Variable,
            s.Formula: Formula,
        }.get(type_term)
        if structural is not None:
            return isinstance(term, structural)
        if not isinstance(term, Box):
            return False
        if term.box_type is BoxType.LITERAL:
            return term.datatype == type_term
        return self.vocabulary.box_type_of(type_term) is term.box_type

    def accepts_all(self, formulas: Iterable[Term]) -> bool:
        return all(self.accepts(f) for f in formulas)

    def violations(self, formulas: Iterable[Term]) -> list[Term]:
        """Formulas no declaration permits."""
        return [f for f in formulas if not self.accepts(f)]

    async def validate(self, formulas: Iterable[Term]) -> bool:
        """Validate off the event loop; large collections may take a while."""
        snapshot = formulas.snapshot() if isinstance(formulas, ReadOnlyFormulaCollection) else list(formulas)
        return await asyncio.to_thread(self.accepts_all, snapshot)


# =============================================================================
# FACTORIES
# =============================================================================


def empty_schema(vocabulary: Vocabulary | None = None) -> Schema:
    return Schema(vocabulary=vocabulary)


def graph_schema(vocabulary: Vocabulary | None = None) -> Schema:
    """Accepts triples only: any predicate with exactly two arguments."""
    schema = Schema(vocabulary=vocabulary)
    return schema.declare(schema.vocabulary.schema.Any, 2)


def builtin_schema(vocabulary: Vocabulary | None = None) -> Schema:
    """Always-available schema for the query, update, rule, setting and
    schema vocabularies themselves."""
    schema = Schema(vocabulary=vocabulary)
    vocab = schema.vocabulary
    q, u, s = vocab.query, vocab.update, vocab.schema

    declarations: list[tuple[Term, int | None, tuple[str, ...]]] = [
        (q.where, 2, ("Any", "Box")),
        (q.filter, 3, ("Any", "Any", "Box")),
        (q.bind, 4, ("Any", "Any", "Variable", "Box")),
        (q.groupBy, 3, ("Any", "Any", "Box")),
        (q.having, 2, ("Any", "Box")),
        (q.orderBy, 3, ("Any", "Any", "Box")),
        (q.orderByDescending, 3, ("Any", "Any", "Box")),
        (q.thenBy, 3, ("Any", "Any", "Box")),
        (q.thenByDescending, 3, ("Any", "Any", "Box")),
        (q.distinct, 2, ()),
        (q.reduced, 2, ()),
        (q.offset, 3, ("Any", "Any", "Box")),
        (q.limit, 3, ("Any", "Any", "Box")),
        (q.ask, 2, ()),
        (q.select, 3, ("Any", "Any", "Box")),
        (q.construct, 3, ("Any", "Any", "Box")),
        (q.describe, None, ()),
        (u.simple, 3, ("Any", "Box", "Box")),
        (u.queryBased, 4, ("Any", "Any", "Box", "Box")),
        (u.composite, None, ()),
        (u.conditional, 4, ()),
        (vocab.implies, 2, ("Box", "Box")),
        (vocab.config.setting, 2, ("Uri", "Any")),
        (s.declares, 1, ()),
        (s.declares, 2, ("Any", "Box")),
        (s.argumentType, 3, ("Any", "Box", "Uri")),
    ]
    for name in ("join", "union", "optional", "exists", "notExists", "minus"):
        declarations.append((q[name], 3, ()))

    for predicate, arity, types in declarations:
        schema = schema.declare(predicate, arity, types)
    return schema


def knowledge_graph(formulas: Iterable[Formula] = (), vocabulary: Vocabulary | None = None, **kwargs: Any) -> FormulaCollection:
    """Mutable collection restricted to triples.

    Raises:
        SchemaViolationError: an initial formula is not a triple; later
            additions raise the same and leave the graph unchanged
    """
    return FormulaCollection(formulas, schema=graph_schema(vocabulary), vocabulary=vocabulary, strict=True, **kwargs)


def read_only_knowledge_graph(
    formulas: Iterable[Formula] = (),
    vocabulary: Vocabulary | None = None,
    **kwargs: Any,
) -> ReadOnlyFormulaCollection:
    """Read-only collection restricted to triples."""
    return ReadOnlyFormulaCollection(formulas, schema=graph_schema(vocabulary), vocabulary=vocabulary, strict=True, **kwargs)

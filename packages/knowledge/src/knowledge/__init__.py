"""
knowledge - Embeddable formula store

Logical formulas of any arity, queried, updated and reasoned over.

This package implements:
- Term algebra (Any, Blank, Uri, Box, Variable, Formula)
- Read-only and mutable formula collections with change notification
- Schemas and validation
- Query algebra (where/optional/union/minus/filter/bind/group/order/slice)
  concluded into Ask, Select, Construct or Describe, with push delivery
- Updates (simple, query-based, composite, conditional)
- Forward-chaining reasoner with derivation explanations

Example:
    from knowledge import FormulaCollection, Formula, Query, Reasoner, Rule, Uri, Variable

    knows = Uri("http://xmlns.com/foaf/0.1/knows")
    alice, bob = Uri("urn:alice"), Uri("urn:bob")
    x, y = Variable("x"), Variable("y")

    kb = FormulaCollection([Formula(knows, alice, bob)])

    # Query
    rows = kb.query(Query().where(Formula(knows, x, y)).select(x, y))

    # Inference
    reasoner = Reasoner().bind_rules(Rule([Formula(knows, x, y)], [Formula(knows, y, x)]))
    inferred = reasoner.infer(kb)
    print(inferred.explain(Formula(knows, bob, alice)))
"""

from .collection import FormulaCollection, ReadOnlyFormulaCollection, Transaction
from .config import KnowledgeSettings, get_settings
from .disposable import CompositeDisposable, Disposable
from .errors import (
    AggregateDisposalError,
    ExpressionError,
    InvalidStateError,
    KnowledgeError,
    MalformedTermError,
    ReasoningDivergentError,
    SchemaViolationError,
    UnboundVariableError,
    VariableAlreadyBoundError,
)
from .evaluation import Evaluator, Subscription
from .expressions import (
    Expr,
    avg,
    bound,
    concat,
    count,
    datatype,
    group_concat,
    if_,
    is_blank,
    is_literal,
    is_uri,
    lang,
    max_,
    min_,
    regex,
    sample,
    str_,
    sum_,
    var,
)
from .knowledgebase import Configuration, Knowledgebase, LifecycleState
from .query import (
    AskQuery,
    ConstructQuery,
    DescribeQuery,
    Query,
    QueryType,
    SelectQuery,
    where,
)
from .reasoning import Derivation, InferredFormulaCollection, Reasoner, Rule
from .schema import (
    PredicateDeclaration,
    Schema,
    SchemaDocument,
    builtin_schema,
    empty_schema,
    graph_schema,
    knowledge_graph,
    read_only_knowledge_graph,
)
from .serialization import (
    Serializable,
    collection_from_dict,
    collection_to_dict,
    dict_to_term,
    load,
    load_rules,
    save_json,
    save_rules,
    save_yaml,
    serialize,
    term_to_dict,
)
from .substitution import Substitution, bind_pattern, compatible, compose, instantiate
from .terms import (
    ANY,
    AnyTerm,
    Blank,
    Box,
    BoxType,
    Formula,
    Term,
    TermType,
    TermVisitor,
    Uri,
    Variable,
    as_term,
    box,
    literal,
)
from .updates import (
    CompositeUpdate,
    ConditionalUpdate,
    QueryBasedUpdate,
    SimpleUpdate,
    Update,
    UpdateType,
)
from .vocabulary import Namespace, Setting, Vocabulary

__all__ = [
    # Terms
    "Term",
    "TermType",
    "AnyTerm",
    "ANY",
    "Blank",
    "Uri",
    "Box",
    "BoxType",
    "Variable",
    "Formula",
    "TermVisitor",
    "as_term",
    "box",
    "literal",
    # Substitution
    "Substitution",
    "bind_pattern",
    "compatible",
    "compose",
    "instantiate",
    # Vocabulary
    "Vocabulary",
    "Namespace",
    "Setting",
    # Collections
    "ReadOnlyFormulaCollection",
    "FormulaCollection",
    "Transaction",
    # Schema
    "Schema",
    "SchemaDocument",
    "PredicateDeclaration",
    "empty_schema",
    "graph_schema",
    "builtin_schema",
    "knowledge_graph",
    "read_only_knowledge_graph",
    # Queries
    "Query",
    "QueryType",
    "AskQuery",
    "SelectQuery",
    "ConstructQuery",
    "DescribeQuery",
    "where",
    "Evaluator",
    "Subscription",
    # Expressions
    "Expr",
    "var",
    "bound",
    "str_",
    "lang",
    "datatype",
    "regex",
    "concat",
    "if_",
    "is_uri",
    "is_blank",
    "is_literal",
    "count",
    "sum_",
    "avg",
    "min_",
    "max_",
    "sample",
    "group_concat",
    # Updates
    "Update",
    "UpdateType",
    "SimpleUpdate",
    "QueryBasedUpdate",
    "CompositeUpdate",
    "ConditionalUpdate",
    # Reasoning
    "Rule",
    "Reasoner",
    "Derivation",
    "InferredFormulaCollection",
    # Knowledgebase
    "Knowledgebase",
    "LifecycleState",
    "Configuration",
    # Serialization
    "Serializable",
    "serialize",
    "term_to_dict",
    "dict_to_term",
    "collection_to_dict",
    "collection_from_dict",
    "save_json",
    "save_yaml",
    "load",
    "save_rules",
    "load_rules",
    # Infrastructure
    "Disposable",
    "CompositeDisposable",
    "KnowledgeSettings",
    "get_settings",
    # Errors
    "KnowledgeError",
    "MalformedTermError",
    "SchemaViolationError",
    "UnboundVariableError",
    "VariableAlreadyBoundError",
    "ExpressionError",
    "InvalidStateError",
    "ReasoningDivergentError",
    "AggregateDisposalError",
]

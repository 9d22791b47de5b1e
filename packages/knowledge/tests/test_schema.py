"""
tests/test_schema.py - Schema and validation tests

Key Properties Tested:
    - Predicate, arity and argument-type declarations
    - Variables and wildcards satisfy every type
    - Empty schema accepts everything; schema:Any applies to all predicates
    - YAML documents load through pydantic validation
    - Asynchronous validation of large collections
"""

import pytest
from pydantic import ValidationError

from knowledge import (
    ANY,
    Blank,
    Box,
    BoxType,
    Formula,
    FormulaCollection,
    PredicateDeclaration,
    ReadOnlyFormulaCollection,
    Schema,
    SchemaDocument,
    Uri,
    box,
    empty_schema,
    graph_schema,
    literal,
    read_only_knowledge_graph,
)

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def age():
    return Uri("http://example.org/age")


@pytest.fixture
def schema(knows, age, vocab):
    return (
        Schema(vocabulary=vocab)
        .declare(knows, 2, ["Uri", "Uri"])
        .declare(age, 2, ["Uri", "int"])
    )


# =============================================================================
# DECLARATION TESTS
# =============================================================================


class TestDeclarations:
    """Tests for accepts() against declarations."""

    def test_declared_formula_accepted(self, schema, knows, alice, bob):
        assert schema.accepts(Formula(knows, alice, bob))

    def test_wrong_arity_rejected(self, schema, knows, alice):
        assert not schema.accepts(Formula(knows, alice))

    def test_undeclared_predicate_rejected(self, schema, name, alice):
        assert not schema.accepts(Formula(name, alice, "Alice"))

    def test_argument_type_checked(self, schema, knows, age, alice):
        assert not schema.accepts(Formula(knows, alice, Blank("b1")))
        assert schema.accepts(Formula(age, alice, Box(BoxType.INT32, 30)))
        assert not schema.accepts(Formula(age, alice, box(30)))  # INT64

    def test_typed_literal_matches_datatype(self, schema, age, alice, vocab):
        assert schema.accepts(Formula(age, alice, literal("30", datatype=vocab.xsd.int)))

    def test_variables_and_wildcards_satisfy_types(self, schema, knows, age, x):
        assert schema.accepts(Formula(knows, x, ANY))
        assert schema.accepts(Formula(age, x, x))

    def test_variable_predicate_matches_any_declaration(self, schema, alice, bob, x):
        assert schema.accepts(Formula(x, alice, bob))
        assert not schema.accepts(Formula(x, alice))

    def test_any_arity_declaration(self, knows, alice, bob, carol):
        schema = Schema().declare(knows)
        assert schema.accepts(Formula(knows, alice))
        assert schema.accepts(Formula(knows, alice, bob, carol))

    def test_multiple_arities(self, knows, alice, bob):
        schema = Schema().declare(knows, 1).declare(knows, 2)
        assert schema.accepts(Formula(knows, alice))
        assert schema.accepts(Formula(knows, alice, bob))
        assert not schema.accepts(Formula(knows))

    def test_declare_is_persistent(self, schema, name, alice):
        extended = schema.declare(name, 2)
        assert extended.accepts(Formula(name, alice, "Alice"))
        assert not schema.accepts(Formula(name, alice, "Alice"))

    def test_merge(self, schema, name, alice):
        merged = schema.merge(Schema().declare(name, 2))
        assert merged.accepts(Formula(name, alice, "Alice"))

    def test_violations(self, schema, knows, name, alice, bob):
        bad = Formula(name, alice, "Alice")
        assert schema.violations([Formula(knows, alice, bob), bad]) == [bad]


# =============================================================================
# FACTORY TESTS
# =============================================================================


class TestFactories:
    def test_empty_schema_accepts_everything(self, knows, alice):
        schema = empty_schema()
        assert schema.is_empty
        assert schema.accepts(Formula(knows, alice))

    def test_graph_schema(self, knows, alice, bob):
        schema = graph_schema()
        assert schema.accepts(Formula(knows, alice, bob))
        assert schema.accepts(Formula(Uri("urn:anything"), alice, bob))
        assert not schema.accepts(Formula(knows, alice, bob, bob))

    def test_read_only_knowledge_graph(self, friends):
        graph = read_only_knowledge_graph(friends)
        assert graph.is_graph
        assert graph.is_valid

    def test_schema_is_a_collection(self, schema, knows, vocab):
        assert isinstance(schema, ReadOnlyFormulaCollection)
        assert Formula(vocab.schema.declares, knows, box(2)) in schema
        assert knows in schema.declared_predicates


# =============================================================================
# DOCUMENT TESTS
# =============================================================================


class TestDocuments:
    def test_from_dict(self, knows, alice, bob):
        schema = Schema.from_dict({
            "namespace": "http://xmlns.com/foaf/0.1/",
            "predicates": [{"name": "knows", "arity": 2, "arguments": ["Uri", "Uri"]}],
        })
        assert schema.accepts(Formula(knows, alice, bob))
        assert not schema.accepts(Formula(knows, alice, "Bob"))

    def test_from_yaml(self, tmp_path, age, alice):
        path = tmp_path / "schema.yaml"
        path.write_text(
            "schema_version: 1.0.0\n"
            "predicates:\n"
            "  - uri: http://example.org/age\n"
            "    arity: 2\n"
            "    arguments: [Uri, long]\n"
        )
        schema = Schema.from_yaml(path)
        assert schema.accepts(Formula(age, alice, 30))

    def test_name_requires_namespace(self):
        with pytest.raises(ValidationError):
            SchemaDocument(predicates=[{"name": "knows"}])

    def test_unknown_argument_type_rejected(self):
        with pytest.raises(ValidationError):
            PredicateDeclaration(uri="urn:p", arguments=["NotAType"])

    def test_too_many_argument_types_rejected(self):
        with pytest.raises(ValidationError):
            PredicateDeclaration(uri="urn:p", arity=1, arguments=["Uri", "Uri"])

    def test_to_document(self, schema, knows, alice, bob):
        document = schema.to_document()
        by_uri = {p.uri: p for p in document.predicates}
        assert by_uri["http://xmlns.com/foaf/0.1/knows"].arguments == ["Uri", "Uri"]
        assert by_uri["http://example.org/age"].arguments == ["Uri", "int"]
        assert Schema.from_document(document).accepts(Formula(knows, alice, bob))


# =============================================================================
# ASYNC VALIDATION
# =============================================================================


class TestAsyncValidation:
    @pytest.mark.asyncio
    async def test_validate_accepts(self, schema, friends):
        assert await schema.validate(friends) is True

    @pytest.mark.asyncio
    async def test_validate_rejects(self, schema, knows, alice):
        kb = FormulaCollection([Formula(knows, alice)])
        assert await schema.validate(kb) is False

"""
tests/test_terms.py - Term algebra tests

Key Properties Tested:
    - Matching: reflexive, wildcard/variable compatibility, arity sensitive
    - Groundness and variable collection
    - Substitution: identity on ground terms, capture avoiding in quotations
    - Box tags: range checking and natural boxing of Python values
"""

from datetime import datetime
from decimal import Decimal

import pytest

from knowledge import (
    ANY,
    Blank,
    Box,
    BoxType,
    Formula,
    MalformedTermError,
    ReadOnlyFormulaCollection,
    TermType,
    TermVisitor,
    Uri,
    Variable,
    box,
    literal,
)
from knowledge.substitution import bind_pattern, compatible, compose, instantiate, merge
from knowledge.errors import UnboundVariableError

# =============================================================================
# MATCHING TESTS
# =============================================================================


class TestMatching:
    """Tests for the non-binding matching relation."""

    def test_formula_matches_itself(self, knows, alice, bob):
        f = Formula(knows, alice, bob)
        assert f.matches(f)

    def test_any_matches_everything(self, knows, alice, bob):
        assert ANY.matches(alice)
        assert ANY.matches(Formula(knows, alice, bob))

    def test_variable_pattern_matches(self, knows, alice, bob, x):
        assert Formula(knows, x, bob).matches(Formula(knows, alice, bob))

    def test_matching_is_not_symmetric(self, knows, alice, bob, x):
        pattern = Formula(knows, x, bob)
        fact = Formula(knows, alice, bob)
        assert pattern.matches(fact)
        assert not fact.matches(pattern)

    def test_arity_mismatch(self, knows, alice, bob, carol):
        assert not Formula(knows, ANY, ANY).matches(Formula(knows, alice, bob, carol))

    def test_box_matches_only_identical(self):
        assert box(1).matches(box(1))
        assert not box(1).matches(box(2))
        assert not Box(BoxType.INT32, 1).matches(Box(BoxType.INT64, 1))


# =============================================================================
# GROUNDNESS AND VARIABLES
# =============================================================================


class TestVariables:
    def test_ground_formula(self, knows, alice, bob):
        assert Formula(knows, alice, bob).is_ground()

    def test_variable_predicate_never_ground(self, alice, bob, x):
        f = Formula(x, alice, bob)
        assert not f.is_ground()
        assert f.term_type is TermType.FORMULA

    def test_wildcard_predicate_never_ground(self, alice, bob):
        assert not ANY.is_ground()
        assert not Formula(ANY, alice, bob).is_ground()
        assert Formula(ANY, alice, bob).get_variables() == ()

    def test_wildcard_inside_quotation_is_not_ground(self, knows, alice):
        quoted = Box(BoxType.FORMULAS, ReadOnlyFormulaCollection([Formula(knows, alice, ANY)]))
        assert not quoted.is_ground()
        assert not Formula(knows, alice, quoted).is_ground()
        assert not quoted.matches(Box(BoxType.FORMULAS, ReadOnlyFormulaCollection([Formula(knows, alice, alice)])))

    def test_wildcard_substitution_is_identity(self, knows, alice, x):
        f = Formula(knows, ANY, x)
        assert f.substitute({x: alice}) == Formula(knows, ANY, alice)

    def test_get_variables_first_occurrence_order(self, knows, x, y, z):
        f = Formula(knows, y, Formula(knows, x, y), z)
        assert f.get_variables() == (y, x, z)
        assert f.variables() == {x, y, z}

    def test_zero_arity_formula(self, knows):
        f = Formula(knows)
        assert f.arity == 0
        assert f.is_ground()

    def test_python_values_are_boxed(self, knows, alice):
        f = Formula(knows, alice, "Bob", 3)
        assert f[1] == Box(BoxType.STRING, "Bob")
        assert f[2] == Box(BoxType.INT64, 3)


# =============================================================================
# SUBSTITUTION TESTS
# =============================================================================


class TestSubstitution:
    def test_substitute_ground_is_identity(self, knows, alice, bob, x):
        f = Formula(knows, alice, bob)
        assert f.substitute({x: bob}) is f

    def test_substitute_binds(self, knows, alice, bob, x, y):
        f = Formula(knows, x, y)
        assert f.substitute({x: alice, y: bob}) == Formula(knows, alice, bob)

    def test_quoted_bound_variables_renamed_apart(self, knows, x, y):
        inner = ReadOnlyFormulaCollection([Formula(knows, x, y)])
        quoted = Box(BoxType.FORMULAS, inner, bound=frozenset({x}))
        assert quoted.variables() == {y}

        # ?y := ?x would be captured by the locally bound ?x
        result = quoted.substitute({y: x})
        fresh = Variable("x_1")
        assert result.bound == frozenset({fresh})
        assert Formula(knows, fresh, x) in result.value

    def test_quoted_bound_variables_are_not_substituted(self, knows, alice, x, y):
        inner = ReadOnlyFormulaCollection([Formula(knows, x, y)])
        quoted = Box(BoxType.FORMULAS, inner, bound=frozenset({x}))
        result = quoted.substitute({x: alice})
        assert result == quoted

    def test_instantiate_strict_requires_ground(self, knows, alice, x, y):
        with pytest.raises(UnboundVariableError) as exc:
            instantiate(Formula(knows, x, y), {x: alice}, strict=True)
        assert exc.value.variable == y

    def test_instantiate_strict_rejects_wildcards(self, knows, alice, x):
        with pytest.raises(UnboundVariableError):
            instantiate(Formula(knows, x, ANY), {x: alice}, strict=True)

    def test_bind_pattern(self, knows, alice, bob, x):
        row = bind_pattern(Formula(knows, x, x), Formula(knows, alice, alice))
        assert row == {x: alice}
        assert bind_pattern(Formula(knows, x, x), Formula(knows, alice, bob)) is None

    def test_bind_pattern_respects_existing_row(self, knows, alice, bob, x):
        assert bind_pattern(Formula(knows, x, bob), Formula(knows, alice, bob), {x: bob}) is None

    def test_compatible_and_merge(self, alice, bob, x, y):
        assert compatible({x: alice}, {y: bob})
        assert not compatible({x: alice}, {x: bob})
        assert merge({x: alice}, {y: bob}) == {x: alice, y: bob}

    def test_compose(self, knows, alice, x, y):
        theta = compose({y: alice}, {x: Formula(knows, y)})
        assert theta[x] == Formula(knows, alice)
        assert theta[y] == alice


# =============================================================================
# BOX TESTS
# =============================================================================


class TestBox:
    def test_integer_range_checked(self):
        Box(BoxType.INT8, 127)
        with pytest.raises(MalformedTermError):
            Box(BoxType.INT8, 128)
        with pytest.raises(MalformedTermError):
            Box(BoxType.UINT16, -1)

    def test_bool_is_not_an_integer(self):
        with pytest.raises(MalformedTermError):
            Box(BoxType.INT32, True)

    def test_language_only_on_literals(self):
        assert literal("chat", language="fr").language == "fr"
        with pytest.raises(MalformedTermError):
            Box(BoxType.STRING, "chat", language="fr")

    def test_natural_boxing(self):
        assert box(True).box_type is BoxType.BOOLEAN
        assert box(7).box_type is BoxType.INT64
        assert box(2**63).box_type is BoxType.UINT64
        assert box(1.5).box_type is BoxType.FLOAT64
        assert box(Decimal("1.50")).box_type is BoxType.DECIMAL
        assert box(datetime(2024, 1, 1)).box_type is BoxType.DATETIME

    def test_mutable_collection_is_snapshotted(self, knows, alice, bob):
        from knowledge import FormulaCollection

        live = FormulaCollection([Formula(knows, alice, bob)])
        quoted = box(live)
        live.add(Formula(knows, bob, alice))
        assert len(quoted.value) == 1
        assert quoted.value.is_read_only

    def test_unboxable_value(self):
        with pytest.raises(MalformedTermError):
            box(object())


# =============================================================================
# IDENTIFIERS AND VISITOR
# =============================================================================


class TestIdentifiers:
    def test_blank_equality_is_scoped(self):
        assert Blank("b1", "s1") == Blank("b1", "s1")
        assert Blank("b1", "s1") != Blank("b1", "s2")

    def test_vocabulary_blanks_are_fresh(self, vocab):
        assert vocab.blank() != vocab.blank()
        assert vocab.blank("b9") == Blank("b9", "test")

    def test_empty_uri_rejected(self):
        with pytest.raises(MalformedTermError):
            Uri("")

    def test_visitor_double_dispatch(self, knows, alice, x):
        class Counter(TermVisitor):
            def visit_uri(self, term):
                return "uri"

            def visit_variable(self, term):
                return "variable"

            def visit_formula(self, term):
                return [t.visit(self) for t in term.terms()]

        assert Formula(knows, alice, x).visit(Counter()) == ["uri", "uri", "variable"]

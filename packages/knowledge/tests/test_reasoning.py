"""
tests/test_reasoning.py - Forward-chaining reasoner tests

Key Properties Tested:
    - Closure contains the base and every derivable formula
    - Every inferred formula carries at least one derivation
    - Rules are safe: conclusion variables must occur in premises
    - Divergence raises instead of returning a partial closure
    - Rules round-trip through implication formulas
    - Asynchronous bind runs off the event loop
"""

import pytest

from knowledge import (
    Box,
    BoxType,
    Formula,
    FormulaCollection,
    InferredFormulaCollection,
    KnowledgeSettings,
    MalformedTermError,
    ReadOnlyFormulaCollection,
    Reasoner,
    ReasoningDivergentError,
    Rule,
    Uri,
    Variable,
)

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def symmetric(knows, x, y):
    return Rule([Formula(knows, x, y)], [Formula(knows, y, x)], name="knows-symmetric")


@pytest.fixture
def parent():
    return Uri("http://example.org/parent")


@pytest.fixture
def ancestor():
    return Uri("http://example.org/ancestor")


@pytest.fixture
def lineage(parent):
    a, b, c, d = (Uri(f"urn:{n}") for n in "abcd")
    return ReadOnlyFormulaCollection([Formula(parent, a, b), Formula(parent, b, c), Formula(parent, c, d)])


@pytest.fixture
def ancestry(parent, ancestor, x, y, z):
    return Reasoner().bind_rules([
        Rule([Formula(parent, x, y)], [Formula(ancestor, x, y)], name="parent-is-ancestor"),
        Rule([Formula(ancestor, x, y), Formula(ancestor, y, z)], [Formula(ancestor, x, z)], name="transitive"),
    ])


# =============================================================================
# RULE TESTS
# =============================================================================


class TestRules:
    def test_unsafe_rule_rejected(self, knows, x, y, z):
        with pytest.raises(MalformedTermError):
            Rule([Formula(knows, x, y)], [Formula(knows, x, z)])

    def test_rule_needs_conclusions(self, knows, x, y):
        with pytest.raises(MalformedTermError):
            Rule([Formula(knows, x, y)], [])

    def test_default_names_are_unique(self, knows, x, y):
        a = Rule([Formula(knows, x, y)], [Formula(knows, y, x)])
        b = Rule([Formula(knows, x, y)], [Formula(knows, y, x)])
        assert a.name != b.name

    def test_formula_round_trip(self, symmetric, vocab):
        formula = symmetric.to_formula(vocab)
        assert formula.predicate == vocab.implies
        restored = Rule.from_formula(formula, vocab, name=symmetric.name)
        assert restored == symmetric

    def test_from_formula_rejects_non_implication(self, knows, alice, bob, vocab):
        with pytest.raises(MalformedTermError):
            Rule.from_formula(Formula(knows, alice, bob), vocab)

    def test_bind_rules_returns_new_reasoner(self, symmetric):
        reasoner = Reasoner()
        bound = reasoner.bind_rules(symmetric)
        assert reasoner.rules == ()
        assert bound.rules == (symmetric,)

    def test_rules_from_collection(self, symmetric, vocab):
        rules = FormulaCollection(vocabulary=vocab)
        symmetric.serialize(rules)
        reasoner = Reasoner(vocabulary=vocab).bind_rules(rules)
        assert reasoner.rules[0].premises == symmetric.premises


# =============================================================================
# CLOSURE TESTS
# =============================================================================


class TestClosure:
    def test_symmetric_closure(self, symmetric, knows, alice, bob):
        inferred = Reasoner().bind_rules(symmetric).infer(ReadOnlyFormulaCollection([Formula(knows, alice, bob)]))
        assert isinstance(inferred, InferredFormulaCollection)
        assert inferred.is_inferred
        assert Formula(knows, bob, alice) in inferred
        assert len(inferred.derivations(Formula(knows, bob, alice))) > 0

    def test_base_facts_have_no_derivations(self, symmetric, knows, alice, bob):
        inferred = Reasoner().bind_rules(symmetric).infer(ReadOnlyFormulaCollection([Formula(knows, alice, bob)]))
        assert inferred.derivations(Formula(knows, alice, bob)) == ()
        assert inferred.inferred == (Formula(knows, bob, alice),)

    def test_closure_contains_base(self, ancestry, lineage):
        inferred = ancestry.infer(lineage)
        assert all(f in inferred for f in lineage)
        assert inferred.base == lineage

    def test_transitive_closure(self, ancestry, lineage, ancestor):
        inferred = ancestry.infer(lineage)
        assert inferred.count(Formula(ancestor, Variable("s"), Variable("o"))) == 6
        assert Formula(ancestor, Uri("urn:a"), Uri("urn:d")) in inferred

    def test_closure_is_fixpoint(self, ancestry, lineage):
        once = ancestry.infer(lineage)
        twice = ancestry.infer(once)
        assert twice == once

    def test_rules_without_premises_assert_facts(self, knows, alice, bob):
        inferred = Reasoner().bind_rules(Rule([], [Formula(knows, alice, bob)])).infer(ReadOnlyFormulaCollection())
        assert list(inferred) == [Formula(knows, alice, bob)]

    def test_base_is_unchanged(self, symmetric, mutable_friends, knows, alice, carol):
        mutable_friends.add(Formula(knows, alice, carol))
        Reasoner().bind_rules(symmetric).infer(mutable_friends)
        assert len(mutable_friends) == 3

    def test_divergence_raises(self, alice, vocab):
        nat, succ = Uri("urn:nat"), Uri("urn:succ")
        n = Variable("n")
        reasoner = Reasoner(settings=KnowledgeSettings(max_iterations=10)).bind_rules(
            Rule([Formula(nat, n)], [Formula(nat, Formula(succ, n))], name="successor")
        )
        with pytest.raises(ReasoningDivergentError) as exc:
            reasoner.infer(ReadOnlyFormulaCollection([Formula(nat, alice)]))
        assert exc.value.iterations == 10

    def test_size_bound(self, ancestry, lineage):
        reasoner = Reasoner(ancestry.rules, settings=KnowledgeSettings(max_formulas=5))
        with pytest.raises(ReasoningDivergentError):
            reasoner.infer(lineage)

    def test_quoted_premises(self, vocab, alice, bob, x):
        says, believes = Uri("urn:says"), Uri("urn:believes")
        claim = Box(BoxType.FORMULAS, ReadOnlyFormulaCollection([Formula(Uri("urn:likes"), alice, bob)]))
        rule = Rule([Formula(says, alice, x)], [Formula(believes, bob, x)])
        inferred = Reasoner().bind_rules(rule).infer(ReadOnlyFormulaCollection([Formula(says, alice, claim)]))
        assert Formula(believes, bob, claim) in inferred


# =============================================================================
# EXPLANATION TESTS
# =============================================================================


class TestExplanations:
    def test_derivation_records_rule_and_bindings(self, symmetric, knows, alice, bob, x, y):
        inferred = Reasoner().bind_rules(symmetric).infer(ReadOnlyFormulaCollection([Formula(knows, alice, bob)]))
        [derivation] = inferred.derivations(Formula(knows, bob, alice))
        assert derivation.rule is symmetric
        assert derivation.bindings == {x: alice, y: bob}
        assert derivation.premises == (Formula(knows, alice, bob),)

    def test_explain_tree(self, ancestry, lineage, ancestor):
        inferred = ancestry.infer(lineage)
        text = inferred.explain(Formula(ancestor, Uri("urn:a"), Uri("urn:c")))
        assert "by rule: transitive" in text
        assert "(fact)" in text

    def test_explain_absent(self, ancestry, lineage, ancestor):
        inferred = ancestry.infer(lineage)
        assert "✗" in inferred.explain(Formula(ancestor, Uri("urn:d"), Uri("urn:a")))

    def test_to_dict(self, symmetric, knows, alice, bob):
        inferred = Reasoner().bind_rules(symmetric).infer(ReadOnlyFormulaCollection([Formula(knows, alice, bob)]))
        [derivation] = inferred.derivations(Formula(knows, bob, alice))
        data = derivation.to_dict()
        assert data["rule"] == "knows-symmetric"
        assert data["bindings"] == {"x": repr(alice), "y": repr(bob)}
        assert data["iteration"] == 1


# =============================================================================
# ASYNC BIND
# =============================================================================


class TestAsyncBind:
    @pytest.mark.asyncio
    async def test_bind(self, symmetric, knows, alice, bob):
        reasoner = Reasoner().bind_rules(symmetric)
        inferred = await reasoner.bind(ReadOnlyFormulaCollection([Formula(knows, alice, bob)]))
        assert Formula(knows, bob, alice) in inferred
        assert inferred.reasoner is reasoner

    @pytest.mark.asyncio
    async def test_bind_divergence(self, alice):
        nat, succ = Uri("urn:nat"), Uri("urn:succ")
        n = Variable("n")
        reasoner = Reasoner(settings=KnowledgeSettings(max_iterations=5)).bind_rules(
            Rule([Formula(nat, n)], [Formula(nat, Formula(succ, n))])
        )
        with pytest.raises(ReasoningDivergentError):
            await reasoner.bind(ReadOnlyFormulaCollection([Formula(nat, alice)]))

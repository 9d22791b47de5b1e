"""
tests/test_serialization.py - Dict, JSON and YAML persistence tests

Key Properties Tested:
    - Tagged term dicts load back to equal terms (scalars, quotations, blanks)
    - Collections persist their identifier and metadata
    - Rule files in JSON and YAML
    - Serializable objects describe themselves as formulas
"""

import json
from datetime import datetime
from decimal import Decimal

import pytest

from knowledge import (
    Blank,
    Box,
    BoxType,
    Formula,
    FormulaCollection,
    MalformedTermError,
    ReadOnlyFormulaCollection,
    Rule,
    Serializable,
    SimpleUpdate,
    collection_from_dict,
    collection_to_dict,
    dict_to_term,
    literal,
    load,
    load_rules,
    save_json,
    save_rules,
    save_yaml,
    serialize,
    term_to_dict,
    where,
)

# =============================================================================
# TERM TESTS
# =============================================================================


class TestTermDicts:
    def test_uri_dict(self, alice):
        assert term_to_dict(alice) == {"type": "uri", "value": "http://example.org/alice"}

    def test_nested_formula(self, knows, alice, x):
        term = Formula(knows, alice, Formula(knows, x, Blank("b1", "s")), literal("chat", "fr"))
        assert dict_to_term(term_to_dict(term)) == term

    def test_decimal_and_datetime_survive_json(self, knows, alice):
        term = Formula(knows, alice, Box(BoxType.DECIMAL, Decimal("1.50")), Box(BoxType.DATETIME, datetime(2024, 5, 1, 12)))
        data = json.loads(json.dumps(term_to_dict(term)))
        assert dict_to_term(data) == term

    def test_quoted_formulas_keep_bound_variables(self, knows, x, y):
        inner = ReadOnlyFormulaCollection([Formula(knows, x, y)])
        quoted = Box(BoxType.FORMULAS, inner, bound=frozenset({x}))
        restored = dict_to_term(term_to_dict(quoted))
        assert restored == quoted
        assert restored.bound == frozenset({x})

    def test_unknown_tag(self):
        with pytest.raises(MalformedTermError):
            dict_to_term({"type": "mystery"})

    def test_missing_field(self):
        with pytest.raises(MalformedTermError):
            dict_to_term({"type": "uri"})

    def test_unknown_box_type(self):
        with pytest.raises(MalformedTermError):
            dict_to_term({"type": "box", "box_type": "int128", "value": 1})


# =============================================================================
# COLLECTION TESTS
# =============================================================================


class TestCollectionFiles:
    def test_dict_keeps_metadata(self, knows, alice, bob, vocab):
        f = Formula(knows, alice, bob)
        about = ReadOnlyFormulaCollection([Formula(vocab.dc.title, alice, "friends")])
        note = ReadOnlyFormulaCollection([Formula(vocab.dc.description, alice, "since school")])
        kb = ReadOnlyFormulaCollection([f], term=alice, about=about, formula_about={f: note})

        restored = collection_from_dict(collection_to_dict(kb))
        assert restored == kb
        assert restored.term == alice
        assert restored.about == about
        assert restored.about_formula(f) == note
        assert restored.is_read_only

    def test_mutable_restore(self, friends):
        restored = collection_from_dict(collection_to_dict(friends), mutable=True)
        assert not restored.is_read_only
        assert restored == friends

    def test_json_file(self, tmp_path, friends):
        path = tmp_path / "friends.json"
        save_json(friends, path)
        loaded = load(path)
        assert loaded == friends
        assert loaded.term == friends.term

    def test_yaml_file(self, tmp_path, knows, alice):
        kb = ReadOnlyFormulaCollection([Formula(knows, alice, Box(BoxType.INT16, 7), Decimal("2.5"))])
        path = tmp_path / "kb.yaml"
        save_yaml(kb, path)
        assert load(path) == kb

    def test_unsupported_suffix(self, tmp_path):
        with pytest.raises(ValueError):
            load(tmp_path / "kb.txt")


# =============================================================================
# RULE FILES
# =============================================================================


class TestRuleFiles:
    @pytest.mark.parametrize("suffix", [".json", ".yaml"])
    def test_rules_round_trip(self, tmp_path, knows, x, y, suffix):
        rule = Rule([Formula(knows, x, y)], [Formula(knows, y, x)], name="knows-symmetric")
        path = tmp_path / f"rules{suffix}"
        save_rules([rule], path)
        assert load_rules(path) == [rule]


# =============================================================================
# SERIALIZABLE PROTOCOL
# =============================================================================


class TestSerializable:
    def test_domain_objects_are_serializable(self, knows, x, y):
        rule = Rule([Formula(knows, x, y)], [Formula(knows, y, x)])
        assert isinstance(rule, Serializable)
        assert isinstance(SimpleUpdate(), Serializable)
        assert isinstance(where(Formula(knows, x, y)).ask(), Serializable)

    def test_serialize_returns_fresh_collection(self, knows, x, y, vocab):
        rule = Rule([Formula(knows, x, y)], [Formula(knows, y, x)])
        formulas = serialize(rule, vocab)
        assert isinstance(formulas, FormulaCollection)
        assert list(formulas) == [rule.to_formula(vocab)]

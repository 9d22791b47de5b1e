"""Shared fixtures for formula store tests."""

import pytest

from knowledge import Formula, FormulaCollection, ReadOnlyFormulaCollection, Uri, Variable, Vocabulary

FOAF = "http://xmlns.com/foaf/0.1/"
EX = "http://example.org/"


@pytest.fixture
def vocab():
    return Vocabulary(blank_scope="test")


@pytest.fixture
def knows():
    return Uri(FOAF + "knows")


@pytest.fixture
def name():
    return Uri(FOAF + "name")


@pytest.fixture
def alice():
    return Uri(EX + "alice")


@pytest.fixture
def bob():
    return Uri(EX + "bob")


@pytest.fixture
def carol():
    return Uri(EX + "carol")


@pytest.fixture
def x():
    return Variable("x")


@pytest.fixture
def y():
    return Variable("y")


@pytest.fixture
def z():
    return Variable("z")


@pytest.fixture
def friends(knows, alice, bob, vocab):
    """{knows(alice, bob), knows(bob, alice)}"""
    return ReadOnlyFormulaCollection(
        [Formula(knows, alice, bob), Formula(knows, bob, alice)],
        vocabulary=vocab,
    )


@pytest.fixture
def mutable_friends(friends):
    return FormulaCollection(friends, vocabulary=friends.vocabulary)

"""
knowledge/serialization.py - Dict, JSON and YAML forms of terms, collections and rules

Terms map to tagged dicts:

    {"type": "uri", "value": "urn:alice"}
    {"type": "box", "box_type": "int32", "value": 42}
    {"type": "formula", "predicate": {...}, "arguments": [{...}, ...]}

Collections map to {"term": ..., "formulas": [...], "about": [...],
"formula_about": [...]}; rules to {"name", "premises", "conclusions"}.
Decimals are written as strings and datetimes in ISO 8601 so the JSON and
YAML forms load back to equal terms.

Domain objects take part through the Serializable protocol: they describe
themselves by adding formulas to a mutable collection.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

from .collection import FormulaCollection, ReadOnlyFormulaCollection
from .errors import MalformedTermError
from .reasoning import Rule
from .terms import ANY, AnyTerm, Blank, Box, BoxType, Formula, Term, TermVisitor, Uri, Variable
from .vocabulary import Vocabulary

logger = logging.getLogger(__name__)


@runtime_checkable
class Serializable(Protocol):
    """Anything that can describe itself as formulas."""

    def serialize(self, into: FormulaCollection) -> Any:
        ...


def serialize(obj: Serializable, vocabulary: Vocabulary | None = None) -> FormulaCollection:
    """Fresh mutable collection holding obj's formula description."""
    into = FormulaCollection(vocabulary=vocabulary)
    obj.serialize(into)
    return into


# =============================================================================
# TERMS
# =============================================================================


class _TermEncoder(TermVisitor):
    def visit_any(self, term: AnyTerm) -> dict:
        return {"type": "any"}

    def visit_blank(self, term: Blank) -> dict:
        data = {"type": "blank", "label": term.label}
        if term.scope is not None:
            data["scope"] = term.scope
        return data

    def visit_uri(self, term: Uri) -> dict:
        return {"type": "uri", "value": term.value}

    def visit_variable(self, term: Variable) -> dict:
        return {"type": "variable", "name": term.name}

    def visit_formula(self, term: Formula) -> dict:
        return {
            "type": "formula",
            "predicate": term.predicate.visit(self),
            "arguments": [a.visit(self) for a in term.arguments],
        }

    def visit_box(self, term: Box) -> dict:
        data: dict[str, Any] = {"type": "box", "box_type": term.box_type.value}
        if term.box_type is BoxType.FORMULAS:
            data["value"] = [f.visit(self) for f in term.value]
            if term.bound:
                data["bound"] = sorted(v.name for v in term.bound)
        elif term.box_type is BoxType.DECIMAL:
            data["value"] = str(term.value)
        elif term.box_type is BoxType.DATETIME:
            data["value"] = term.value.isoformat()
        else:
            data["value"] = term.value
        if term.language is not None:
            data["language"] = term.language
        if term.datatype is not None:
            data["datatype"] = term.datatype.value
        return data


_ENCODER = _TermEncoder()


def term_to_dict(term: Term) -> dict[str, Any]:
    return term.visit(_ENCODER)


def dict_to_term(data: dict[str, Any]) -> Term:
    """Inverse of term_to_dict.

    Raises:
        MalformedTermError: unknown tag or malformed payload
    """
    try:
        kind = data["type"]
        if kind == "any":
            return ANY
        if kind == "blank":
            return Blank(data["label"], data.get("scope"))
        if kind == "uri":
            return Uri(data["value"])
        if kind == "variable":
            return Variable(data["name"])
        if kind == "formula":
            return Formula(dict_to_term(data["predicate"]), *(dict_to_term(a) for a in data["arguments"]))
        if kind == "box":
            return _dict_to_box(data)
    except MalformedTermError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedTermError(f"malformed term data {data!r}: {e}") from e
    raise MalformedTermError(f"unknown term type {kind!r}")


def _dict_to_box(data: dict[str, Any]) -> Box:
    box_type = BoxType(data["box_type"])
    value = data["value"]
    if box_type is BoxType.FORMULAS:
        formulas = ReadOnlyFormulaCollection(dict_to_term(f) for f in value)
        bound = frozenset(Variable(name) for name in data.get("bound", ()))
        return Box(box_type, formulas, bound=bound)
    if box_type is BoxType.DATETIME and isinstance(value, str):
        value = datetime.fromisoformat(value)
    datatype = data.get("datatype")
    return Box(
        box_type,
        value,
        language=data.get("language"),
        datatype=Uri(datatype) if datatype else None,
    )


# =============================================================================
# COLLECTIONS
# =============================================================================


def collection_to_dict(collection: ReadOnlyFormulaCollection) -> dict[str, Any]:
    data: dict[str, Any] = {
        "term": term_to_dict(collection.term),
        "formulas": [term_to_dict(f) for f in collection],
    }
    if len(collection.about):
        data["about"] = [term_to_dict(f) for f in collection.about]
    formula_about = []
    for f in collection:
        present, meta = collection.contains(f, with_about=True)
        if present and len(meta):
            formula_about.append({"formula": term_to_dict(f), "about": [term_to_dict(m) for m in meta]})
    if formula_about:
        data["formula_about"] = formula_about
    return data


def collection_from_dict(
    data: dict[str, Any],
    mutable: bool = False,
    vocabulary: Vocabulary | None = None,
    schema: Any = None,
) -> ReadOnlyFormulaCollection:
    """Rebuild a collection; read-only unless mutable is set."""
    formulas = [dict_to_term(f) for f in data.get("formulas", [])]
    about = ReadOnlyFormulaCollection(
        (dict_to_term(f) for f in data.get("about", [])),
        vocabulary=vocabulary,
    )
    formula_about = {
        dict_to_term(entry["formula"]): ReadOnlyFormulaCollection(
            (dict_to_term(m) for m in entry["about"]), vocabulary=vocabulary
        )
        for entry in data.get("formula_about", [])
    }
    cls = FormulaCollection if mutable else ReadOnlyFormulaCollection
    return cls(
        formulas,
        term=dict_to_term(data["term"]) if "term" in data else None,
        about=about,
        schema=schema,
        vocabulary=vocabulary,
        formula_about=formula_about,
    )


def save_json(collection: ReadOnlyFormulaCollection, path: str | Path) -> None:
    path = Path(path)
    with open(path, "w") as f:
        json.dump(collection_to_dict(collection), f, indent=2)
    logger.info(f"Saved {len(collection)} formula(s) to {path}")


def load_json(path: str | Path, **kwargs: Any) -> ReadOnlyFormulaCollection:
    path = Path(path)
    with open(path) as f:
        data = json.load(f)
    return collection_from_dict(data, **kwargs)


def save_yaml(collection: ReadOnlyFormulaCollection, path: str | Path) -> None:
    path = Path(path)
    with open(path, "w") as f:
        yaml.safe_dump(collection_to_dict(collection), f, sort_keys=False)
    logger.info(f"Saved {len(collection)} formula(s) to {path}")


def load_yaml(path: str | Path, **kwargs: Any) -> ReadOnlyFormulaCollection:
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return collection_from_dict(data, **kwargs)


def load(path: str | Path, **kwargs: Any) -> ReadOnlyFormulaCollection:
    """Load by file suffix (.json, .yaml/.yml)."""
    path = Path(path)
    if path.suffix in (".yaml", ".yml"):
        return load_yaml(path, **kwargs)
    if path.suffix == ".json":
        return load_json(path, **kwargs)
    raise ValueError(f"Unsupported file format: {path.suffix}")


# =============================================================================
# RULES
# =============================================================================


def rule_to_dict(rule: Rule) -> dict[str, Any]:
    return {
        "name": rule.name,
        "premises": [term_to_dict(p) for p in rule.premises],
        "conclusions": [term_to_dict(c) for c in rule.conclusions],
    }


def dict_to_rule(data: dict[str, Any]) -> Rule:
    return Rule(
        [dict_to_term(p) for p in data.get("premises", [])],
        [dict_to_term(c) for c in data["conclusions"]],
        name=data.get("name"),
    )


def save_rules(rules: list[Rule], path: str | Path) -> None:
    path = Path(path)
    data = {"rules": [rule_to_dict(r) for r in rules]}
    with open(path, "w") as f:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(data, f, sort_keys=False)
        else:
            json.dump(data, f, indent=2)
    logger.info(f"Saved {len(rules)} rule(s) to {path}")


def load_rules(path: str | Path) -> list[Rule]:
    path = Path(path)
    with open(path) as f:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f) or {}
        else:
            data = json.load(f)
    return [dict_to_rule(r) for r in data.get("rules", [])]

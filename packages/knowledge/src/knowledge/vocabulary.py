"""
knowledge/vocabulary.py - Well-known terms and term factory

A Vocabulary is constructed once per store and passed to whatever needs
well-known Uri terms (schema builder, query builder, reasoner). It holds:

- standard namespaces: XSD, RDF, Dublin Core, FOAF, SWO, event ontology
- lifecycle event keys and event-data keys
- the builtin schema, query, update, rule and configuration vocabularies
- typed settings (Uri key + default value)
- factory helpers: uri, blank, variable, literal, box, formula, triples

Example:
    vocab = Vocabulary()
    knows = vocab.uri("http://xmlns.com/foaf/0.1/knows")
    f = vocab.triple_spo(vocab.uri("urn:alice"), knows, vocab.uri("urn:bob"))
"""
from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .terms import Blank, Box, BoxType, Formula, Term, Uri, Variable, box, literal

XSD_NS = "http://www.w3.org/2001/XMLSchema#"
RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
DC_NS = "http://purl.org/dc/terms/"
FOAF_NS = "http://xmlns.com/foaf/0.1/"
SWO_NS = "http://www.ebi.ac.uk/swo/"
EO_NS = "http://www.event-ontology.org/"
LOG_NS = "http://www.w3.org/2000/10/swap/log#"
EVENTS_NS = "http://www.events.org/events/"
EVENT_DATA_NS = "urn:eventdata:"
SETTINGS_NS = "http://www.settings.org/"
SCHEMA_NS = "urn:knowledge:schema#"
QUERY_NS = "urn:knowledge:query#"
UPDATE_NS = "urn:knowledge:update#"
CONFIG_NS = "urn:knowledge:config#"

T = TypeVar("T")


class Namespace:
    """Attribute/item access to Uri terms under a base string.

    Example:
        xsd = Namespace(XSD_NS)
        xsd.int        # <http://www.w3.org/2001/XMLSchema#int>
        xsd["string"]  # <http://www.w3.org/2001/XMLSchema#string>
    """

    def __init__(self, base: str, names: tuple[str, ...] = ()):
        self.base = base
        self._terms: dict[str, Uri] = {name: Uri(base + name) for name in names}

    def __getitem__(self, name: str) -> Uri:
        term = self._terms.get(name)
        if term is None:
            term = self._terms[name] = Uri(self.base + name)
        return term

    def __getattr__(self, name: str) -> Uri:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __contains__(self, term: object) -> bool:
        return isinstance(term, Uri) and term.value.startswith(self.base)

    def __iter__(self):
        return iter(self._terms.values())

    def __repr__(self) -> str:
        return f"Namespace({self.base!r})"


@dataclass(frozen=True)
class Setting(Generic[T]):
    """A configuration key with a typed default."""

    term: Uri
    default_value: T


# Box tag <-> XSD datatype
_BOX_DATATYPES: dict[BoxType, str] = {
    BoxType.BOOLEAN: "boolean",
    BoxType.INT8: "byte",
    BoxType.INT16: "short",
    BoxType.INT32: "int",
    BoxType.INT64: "long",
    BoxType.UINT8: "unsignedByte",
    BoxType.UINT16: "unsignedShort",
    BoxType.UINT32: "unsignedInt",
    BoxType.UINT64: "unsignedLong",
    BoxType.FLOAT32: "float",
    BoxType.FLOAT64: "double",
    BoxType.DECIMAL: "decimal",
    BoxType.DATETIME: "dateTime",
    BoxType.STRING: "string",
}


class Vocabulary:
    """Explicit registry of well-known terms, scoped to its owner."""

    def __init__(self, blank_scope: str | None = None):
        self.blank_scope = blank_scope or uuid.uuid4().hex[:8]
        self._blank_counter = itertools.count(1)
        self._blank_lock = threading.Lock()

        self.xsd = Namespace(XSD_NS, (
            "string", "duration", "dateTime", "time", "date", "anyURI", "QName",
            "boolean", "byte", "unsignedByte", "short", "unsignedShort", "int",
            "unsignedInt", "long", "unsignedLong", "decimal", "float", "double",
        ))
        self.rdf = Namespace(RDF_NS, ("type", "subject", "predicate", "object", "Statement"))
        self.dc = Namespace(DC_NS, ("title", "description"))
        self.foaf = Namespace(FOAF_NS, ("name",))
        self.swo = Namespace(SWO_NS, ("SWO_0004000",))
        self.eo = Namespace(EO_NS, ("raisesEventType", "Event"))
        self.log = Namespace(LOG_NS, ("implies",))

        self.events = Namespace(EVENTS_NS, (
            "InitializedSession", "ObtainedGenerator", "GeneratingActivity",
            "GeneratedActivity", "ExecutingActivity", "ExecutedActivity",
            "DisposingSession", "Changed",
        ))
        self.event_data = Namespace(EVENT_DATA_NS, ("Algorithm", "Generator", "Activity", "User", "Result"))

        self.schema = Namespace(SCHEMA_NS, (
            "declares", "argumentType", "Any", "Uri", "Blank", "Box", "Variable", "Formula",
        ))
        self.query = Namespace(QUERY_NS, (
            "where", "join", "union", "optional", "exists", "notExists", "minus", "filter",
            "bind", "groupBy", "having", "orderBy", "orderByDescending", "thenBy",
            "thenByDescending", "distinct", "reduced", "offset", "limit",
            "ask", "select", "construct", "describe",
        ))
        self.update = Namespace(UPDATE_NS, (
            "simple", "queryBased", "composite", "conditional", "removals",
            "additions", "children", "if", "else",
        ))
        self.config = Namespace(CONFIG_NS, ("setting",))

        self.should_perform_analytics = self.setting(
            SETTINGS_NS + "analytics/ShouldPerformAnalytics", False
        )
        self.should_perform_configuration_analytics = self.setting(
            SETTINGS_NS + "analytics/ShouldPerformConfigurationAnalytics", False
        )

    # -------------------------------------------------------------------------
    # Well-known shortcuts
    # -------------------------------------------------------------------------

    @property
    def implies(self) -> Uri:
        return self.log.implies

    @property
    def version(self) -> Uri:
        return self.swo.SWO_0004000

    def datatype_of(self, box_type: BoxType) -> Uri | None:
        name = _BOX_DATATYPES.get(box_type)
        return self.xsd[name] if name else None

    def box_type_of(self, datatype: Uri) -> BoxType | None:
        for box_type, name in _BOX_DATATYPES.items():
            if datatype == self.xsd[name]:
                return box_type
        return None

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    def uri(self, value: str) -> Uri:
        return Uri(value)

    def blank(self, label: str | None = None) -> Blank:
        """Blank in this vocabulary's namespace; a fresh label when none given."""
        if label is None:
            with self._blank_lock:
                label = f"b{next(self._blank_counter)}"
        return Blank(label, self.blank_scope)

    def variable(self, name: str) -> Variable:
        return Variable(name.lstrip("?"))

    def literal(self, value: str, language: str | None = None, datatype: Uri | None = None) -> Box:
        return literal(value, language=language, datatype=datatype)

    def box(self, value: Any, box_type: BoxType | None = None) -> Box:
        if box_type is None:
            return box(value)
        return Box(box_type, value)

    def formula(self, predicate: Any, *arguments: Any) -> Formula:
        return Formula(predicate, *arguments)

    def triple_pso(self, predicate: Term, subject: Term, obj: Term) -> Formula:
        return Formula(predicate, subject, obj)

    def triple_spo(self, subject: Term, predicate: Term, obj: Term) -> Formula:
        return Formula(predicate, subject, obj)

    def setting(self, uri: str, default_value: T) -> Setting[T]:
        return Setting(Uri(uri), default_value)

"""
knowledge/knowledgebase.py - Knowledgebase lifecycle and configuration lookup

The session layer treats a Knowledgebase as its shared state: a mutable
formula collection that can be initialized, optimized with hints, fed
events, and disposed. Every lifecycle step returns (or releases) a
Disposable scope.

Configuration answers typed settings from a collection of
setting(key, value) formulas.

Example:
    kb = Knowledgebase(formulas, reasoner=reasoner)
    with kb.initialize():
        with kb.optimize(["infer"]):
            kb.inferred.derivations(f)
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any, TypeVar

from .collection import FormulaCollection, ReadOnlyFormulaCollection
from .disposable import Disposable
from .errors import InvalidStateError
from .reasoning import InferredFormulaCollection, Reasoner
from .terms import Box, BoxType, Formula, Term, Uri
from .vocabulary import Setting, Vocabulary

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LifecycleState(Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    DISPOSED = "disposed"


class Knowledgebase(FormulaCollection):
    """Mutable formula collection with a lifecycle.

    Optimization hints:
        "infer"     keep the reasoner's closure materialized until the
                    scope is disposed (recomputed after each change)
        "snapshot"  keep a read-only snapshot for repeated queries
    """

    KNOWN_HINTS = ("infer", "snapshot")

    def __init__(self, formulas: Iterable[Formula] = (), *, reasoner: Reasoner | None = None, **kwargs: Any):
        super().__init__(formulas, **kwargs)
        self._reasoner = reasoner or Reasoner(vocabulary=self._vocabulary)
        self._state = LifecycleState.CREATED
        self._scopes: list[Disposable] = []
        self._hints: dict[str, int] = {}
        self._inferred: InferredFormulaCollection | None = None
        self._snapshot: ReadOnlyFormulaCollection | None = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def reasoner(self) -> Reasoner:
        return self._reasoner

    def _require_live(self) -> None:
        if self._state is LifecycleState.DISPOSED:
            raise InvalidStateError("knowledgebase has been disposed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, session: Any = None) -> Disposable:
        """Mark the knowledgebase ready; disposing the scope disposes it."""
        self._require_live()
        if self._state is LifecycleState.INITIALIZED:
            return Disposable.empty()
        self._state = LifecycleState.INITIALIZED
        logger.info(f"Knowledgebase {self.term!r} initialized with {len(self)} formula(s)")
        self.raise_event(self.vocabulary.events.InitializedSession, session)
        return Disposable(lambda: self.dispose(session))

    def optimize(self, hints: Iterable[str], session: Any = None) -> Disposable:
        """Apply optimization hints until the returned scope is disposed."""
        self._require_live()
        scopes = []
        for hint in hints:
            if hint not in self.KNOWN_HINTS:
                logger.debug(f"Ignoring unknown optimization hint {hint!r}")
                continue
            self._hints[hint] = self._hints.get(hint, 0) + 1
            scopes.append(Disposable(lambda h=hint: self._release_hint(h)))
        if not scopes:
            return Disposable.empty()
        scope = Disposable.all(*scopes)
        self._scopes.append(scope)
        return scope

    def _release_hint(self, hint: str) -> None:
        remaining = self._hints.get(hint, 0) - 1
        if remaining > 0:
            self._hints[hint] = remaining
            return
        self._hints.pop(hint, None)
        if hint == "infer":
            self._inferred = None
        elif hint == "snapshot":
            self._snapshot = None

    def dispose(self, session: Any = None) -> None:
        """Release every outstanding scope. Idempotent."""
        if self._state is LifecycleState.DISPOSED:
            return
        self.raise_event(self.vocabulary.events.DisposingSession, session)
        self._state = LifecycleState.DISPOSED
        scopes, self._scopes = self._scopes, []
        self._inferred = None
        self._snapshot = None
        logger.info(f"Knowledgebase {self.term!r} disposed")
        Disposable.all(*scopes).dispose()

    def __enter__(self) -> Knowledgebase:
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # -------------------------------------------------------------------------
    # Optimized views
    # -------------------------------------------------------------------------

    def _changed(self) -> None:
        self._inferred = None
        self._snapshot = None
        super()._changed()

    def snapshot(self) -> ReadOnlyFormulaCollection:
        if "snapshot" not in self._hints:
            return super().snapshot()
        if self._snapshot is None:
            self._snapshot = super().snapshot()
        return self._snapshot

    @property
    def inferred(self) -> InferredFormulaCollection:
        """Closure under the knowledgebase's reasoner."""
        self._require_live()
        if self._inferred is not None:
            return self._inferred
        inferred = self._reasoner.infer(self)
        if "infer" in self._hints:
            self._inferred = inferred
        return inferred

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def handle(
        self,
        source: Any,
        event_instance: Term,
        about_event_instance: ReadOnlyFormulaCollection | None = None,
        event_data: Term | None = None,
        about_event_data: ReadOnlyFormulaCollection | None = None,
    ) -> None:
        """Record an event routed from the session layer.

        The event instance is typed as an event, linked to its data, and
        both descriptions are added to the knowledgebase.
        """
        self._require_live()
        vocab = self.vocabulary
        formulas = [Formula(vocab.rdf.type, event_instance, vocab.eo.Event)]
        if event_data is not None:
            formulas.append(Formula(vocab.event_data.Result, event_instance, event_data))
        for about in (about_event_instance, about_event_data):
            if about is not None:
                formulas.extend(about)
        self.add(formulas)
        logger.debug(f"Knowledgebase handled event {event_instance!r} from {type(source).__name__}")


class Configuration:
    """Typed settings read from setting(key, value) formulas.

    Example:
        config = Configuration(formulas, vocab)
        config.get(vocab.should_perform_analytics)   # False unless set
    """

    def __init__(self, collection: ReadOnlyFormulaCollection, vocabulary: Vocabulary | None = None):
        self.collection = collection
        self.vocabulary = vocabulary or collection.vocabulary

    def _values(self, key: Uri) -> list[Box]:
        pattern = Formula(self.vocabulary.config.setting, key, self.vocabulary.variable("value"))
        out = []
        for formula in self.collection.find(pattern):
            value = formula[1]
            if isinstance(value, Box) and value.box_type is not BoxType.FORMULAS:
                out.append(value)
        return out

    def try_get(self, setting: Setting[T] | Uri, language: str | None = None) -> tuple[bool, Any]:
        """(True, value) if the setting is present, else (False, None).

        With a language, only literals tagged with it are considered.
        """
        key = setting.term if isinstance(setting, Setting) else setting
        for value in self._values(key):
            if language is None or value.language == language:
                return True, value.value
        return False, None

    def get(self, setting: Setting[T], language: str | None = None) -> T:
        found, value = self.try_get(setting, language)
        return value if found else setting.default_value

    def set(self, setting: Setting[T] | Uri, value: Any) -> None:
        """Replace the setting's value (mutable collections only)."""
        key = setting.term if isinstance(setting, Setting) else setting
        current = [Formula(self.vocabulary.config.setting, key, v) for v in self._values(key)]
        if current:
            self.collection.remove(current)
        self.collection.add(Formula(self.vocabulary.config.setting, key, value))

    def about(self, setting: Setting[T] | Uri, language: str | None = None) -> ReadOnlyFormulaCollection | None:
        """Formulas describing the setting key itself, or None if there are none."""
        key = setting.term if isinstance(setting, Setting) else setting
        described = []
        for formula in self.collection:
            if formula.predicate == self.vocabulary.config.setting or not formula.arguments:
                continue
            if formula[0] != key:
                continue
            if language is not None and any(
                isinstance(a, Box) and a.language not in (None, language) for a in formula.arguments
            ):
                continue
            described.append(formula)
        if not described:
            return None
        return ReadOnlyFormulaCollection(described, vocabulary=self.vocabulary)

    def on_changed(self, handler) -> Disposable:
        return self.collection.on_changed(lambda _source: handler(self))

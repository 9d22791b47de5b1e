"""
tests/test_knowledgebase.py - Knowledgebase lifecycle and configuration tests

Key Properties Tested:
    - initialize/optimize/dispose scopes and lifecycle events
    - "infer" and "snapshot" hints cache until released or changed
    - Events routed from the session layer become formulas
    - Typed configuration lookup with defaults and language filtering
"""

import pytest

from knowledge import (
    Configuration,
    Formula,
    FormulaCollection,
    InvalidStateError,
    Knowledgebase,
    LifecycleState,
    Reasoner,
    Rule,
    literal,
)

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def kb(knows, alice, bob, x, y, vocab):
    reasoner = Reasoner().bind_rules(Rule([Formula(knows, x, y)], [Formula(knows, y, x)]))
    return Knowledgebase([Formula(knows, alice, bob)], reasoner=reasoner, vocabulary=vocab)


# =============================================================================
# LIFECYCLE TESTS
# =============================================================================


class TestLifecycle:
    def test_initialize_raises_event(self, kb, vocab):
        events = []
        kb.subscribe(vocab.events.InitializedSession, lambda source, event, data: events.append(data))
        scope = kb.initialize("session-1")
        assert kb.state is LifecycleState.INITIALIZED
        assert events == ["session-1"]
        scope.dispose()
        assert kb.state is LifecycleState.DISPOSED

    def test_initialize_twice_is_harmless(self, kb):
        kb.initialize()
        second = kb.initialize()
        second.dispose()
        assert kb.state is LifecycleState.INITIALIZED

    def test_dispose_is_idempotent(self, kb, vocab):
        disposing = []
        kb.subscribe(vocab.events.DisposingSession, lambda *args: disposing.append(args))
        kb.dispose()
        kb.dispose()
        assert len(disposing) == 1

    def test_disposed_knowledgebase_rejects_use(self, kb):
        kb.dispose()
        with pytest.raises(InvalidStateError):
            kb.initialize()
        with pytest.raises(InvalidStateError):
            kb.inferred

    def test_context_manager(self, knows, alice, bob):
        with Knowledgebase([Formula(knows, alice, bob)]) as kb:
            assert kb.state is LifecycleState.INITIALIZED
        assert kb.state is LifecycleState.DISPOSED


# =============================================================================
# OPTIMIZATION HINTS
# =============================================================================


class TestOptimization:
    def test_inferred_without_hint_is_recomputed(self, kb, knows, alice, bob):
        assert Formula(knows, bob, alice) in kb.inferred
        assert kb.inferred is not kb.inferred

    def test_infer_hint_caches(self, kb):
        with kb.optimize(["infer"]):
            assert kb.inferred is kb.inferred
        first = kb.inferred
        assert kb.inferred is not first

    def test_change_invalidates_cache(self, kb, knows, alice, carol):
        with kb.optimize(["infer"]):
            before = kb.inferred
            kb.add(Formula(knows, alice, carol))
            after = kb.inferred
            assert after is not before
            assert Formula(knows, carol, alice) in after

    def test_nested_hints_are_reference_counted(self, kb):
        outer = kb.optimize(["snapshot"])
        inner = kb.optimize(["snapshot"])
        inner.dispose()
        assert kb.snapshot() is kb.snapshot()
        outer.dispose()
        assert kb.snapshot() is not kb.snapshot()

    def test_unknown_hints_ignored(self, kb):
        scope = kb.optimize(["warp-speed"])
        scope.dispose()
        assert scope.is_disposed

    def test_dispose_releases_scopes(self, kb):
        scope = kb.optimize(["infer", "snapshot"])
        kb.dispose()
        assert scope.is_disposed


# =============================================================================
# EVENTS
# =============================================================================


class TestHandle:
    @pytest.mark.asyncio
    async def test_handle_records_event(self, kb, vocab, alice):
        event = vocab.blank("e1")
        data = vocab.blank("d1")
        about = FormulaCollection([Formula(vocab.dc.description, event, "login")])
        await kb.handle(object(), event, about_event_instance=about, event_data=data)
        assert Formula(vocab.rdf.type, event, vocab.eo.Event) in kb
        assert Formula(vocab.event_data.Result, event, data) in kb
        assert Formula(vocab.dc.description, event, "login") in kb


# =============================================================================
# CONFIGURATION
# =============================================================================


class TestConfiguration:
    @pytest.fixture
    def settings(self, vocab):
        return FormulaCollection(vocabulary=vocab)

    def test_default_when_absent(self, settings, vocab):
        config = Configuration(settings)
        assert config.try_get(vocab.should_perform_analytics) == (False, None)
        assert config.get(vocab.should_perform_analytics) is False

    def test_value_when_present(self, settings, vocab):
        key = vocab.should_perform_analytics
        settings.add(Formula(vocab.config.setting, key.term, True))
        config = Configuration(settings)
        assert config.try_get(key) == (True, True)
        assert config.get(key) is True

    def test_set_replaces(self, settings, vocab):
        key = vocab.should_perform_configuration_analytics
        config = Configuration(settings)
        config.set(key, True)
        config.set(key, False)
        assert config.get(key) is False
        assert len(settings) == 1

    def test_language_filter(self, settings, vocab):
        key = vocab.setting("http://www.settings.org/ui/Greeting", "hello")
        settings.add([
            Formula(vocab.config.setting, key.term, literal("bonjour", "fr")),
            Formula(vocab.config.setting, key.term, literal("hallo", "de")),
        ])
        config = Configuration(settings)
        assert config.get(key, language="de") == "hallo"
        assert config.try_get(key, language="es") == (False, None)

    def test_about(self, settings, vocab):
        key = vocab.should_perform_analytics
        assert Configuration(settings).about(key) is None
        settings.add(Formula(vocab.dc.description, key.term, literal("Usage analytics", "en")))
        about = Configuration(settings).about(key, language="en")
        assert len(about) == 1

    def test_on_changed(self, settings, vocab):
        config = Configuration(settings)
        seen = []
        config.on_changed(seen.append)
        config.set(vocab.should_perform_analytics, True)
        assert seen == [config]

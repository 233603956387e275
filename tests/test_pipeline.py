"""End-to-end tests of a voice session: resolve, confirm, apply, undo."""

import threading
import time

import pytest

from stockvoice.config import Settings
from stockvoice.errors import InterpretationFailure
from stockvoice.models import StructuredCommand
from stockvoice.pipeline import VoicePipeline


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class _Clock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class ScriptedInterpreter:
    """Returns queued results for each utterance (raises queued exceptions)."""

    def __init__(self):
        self.results = []
        self.utterances = []
        self.resets = 0

    def interpret(self, utterance, history=None, recent=None):
        self.utterances.append(utterance)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def reset(self):
        self.resets += 1


class BlockingInterpreter(ScriptedInterpreter):
    """Holds each interpretation until released, like a slow language model."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def interpret(self, utterance, history=None, recent=None):
        self.started.set()
        self.release.wait(5)
        return super().interpret(utterance, history, recent)


class InterpreterFactory:
    def __init__(self):
        self.created = []

    def __call__(self):
        interpreter = ScriptedInterpreter()
        self.created.append(interpreter)
        return interpreter


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def factory():
    return InterpreterFactory()


@pytest.fixture
def pipeline(store, factory, clock):
    return VoicePipeline(store, factory, Settings(), clock=clock)


@pytest.fixture
def session(pipeline):
    s = pipeline.open_session("s1", "u1")
    yield s
    s.close()


def _cmd(action, item, quantity, unit="pounds", confidence=0.95):
    return StructuredCommand(action, item, quantity, unit, confidence, True)


def _quantity(store, item):
    return store.find_by_id(item.id).quantity


# ---------------------------------------------------------------------------
# Routine updates
# ---------------------------------------------------------------------------

class TestImplicit:
    def test_confident_small_update_applied(self, catalog, store, session):
        outcome = session.handle_command(_cmd("add", "coffee beans", 5))
        assert outcome.status == "applied"
        assert outcome.message == "Added 5 pounds of Coffee Beans, now 55 pounds"
        assert outcome.decision.type == "implicit"
        assert _quantity(store, catalog["Coffee Beans"]) == 55.0

    def test_applied_command_becomes_context(self, catalog, session):
        session.handle_command(_cmd("add", "coffee beans", 5))
        [recent] = session.context.get_recent_commands()
        assert (recent.action, recent.item, recent.quantity, recent.unit) == ("add", "Coffee Beans", 5, "pounds")
        assert session.context.session_items == ["Coffee Beans"]
        assert session.context.get_conversation_history()[-1]["role"] == "assistant"

    def test_command_unit_converted_for_policy_and_write(self, catalog, store, session):
        outcome = session.handle_command(_cmd("add", "coffee beans", 1, unit="kg"))
        assert outcome.status == "applied"
        assert _quantity(store, catalog["Coffee Beans"]) == pytest.approx(52.204623, abs=1e-5)

    def test_incompatible_unit_rejected(self, catalog, store, session):
        outcome = session.handle_command(_cmd("add", "sugar", 5, unit="gallons"))
        assert outcome.status == "invalid"
        assert _quantity(store, catalog["Sugar"]) == 30.0

    def test_familiar_item_skips_moderate_confidence_check(self, catalog, session):
        session.handle_command(_cmd("add", "coffee beans", 5))
        outcome = session.handle_command(_cmd("add", "coffee beans", 2, confidence=0.7))
        assert outcome.status == "applied"


class TestFromSpeech:
    def test_fragment_to_applied_change(self, catalog, store, session, factory):
        outcomes = []
        session.on_outcome(outcomes.append)
        factory.created[0].results.append([_cmd("add", "coffee beans", 5)])

        session.add_fragment("Add 5 pounds of coffee beans.")

        assert [o.status for o in outcomes] == ["applied"]
        assert _quantity(store, catalog["Coffee Beans"]) == 55.0
        history = session.context.get_conversation_history()
        assert history[0] == {"role": "user", "content": "Add 5 pounds of coffee beans."}

    def test_several_commands_in_one_utterance(self, catalog, store, session, factory):
        outcomes = []
        session.on_outcome(outcomes.append)
        factory.created[0].results.append([
            _cmd("add", "coffee beans", 5),
            _cmd("add", "sugar", 2),
        ])
        session.add_fragment("Add 5 pounds of coffee beans and 2 pounds of sugar.")
        assert [o.status for o in outcomes] == ["applied", "applied"]
        assert _quantity(store, catalog["Sugar"]) == 32.0

    def test_no_command(self, catalog, session, factory):
        outcomes = []
        session.on_outcome(outcomes.append)
        factory.created[0].results.append([])
        session.add_fragment("good morning everyone!")
        assert [o.status for o in outcomes] == ["ignored"]

    def test_interpretation_error(self, catalog, session, factory):
        outcomes = []
        session.on_outcome(outcomes.append)
        factory.created[0].results.append(InterpretationFailure("provider down"))
        session.add_fragment("add 5 pounds of coffee beans")
        assert [o.status for o in outcomes] == ["failed"]
        assert outcomes[0].message == "provider down"

    def test_failing_outcome_listener_is_isolated(self, catalog, store, session, factory):
        def broken(outcome):
            raise RuntimeError("listener bug")

        session.on_outcome(broken)
        factory.created[0].results.append([_cmd("add", "coffee beans", 5)])
        session.add_fragment("Add 5 pounds of coffee beans.")
        assert _quantity(store, catalog["Coffee Beans"]) == 55.0


# ---------------------------------------------------------------------------
# Commands that need confirmation
# ---------------------------------------------------------------------------

class TestPending:
    def test_moderate_confidence_waits(self, catalog, store, session, clock):
        outcome = session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        assert outcome.status == "pending"
        assert outcome.message == "Add 5 pounds of Coffee Beans?"
        assert outcome.pending_id.startswith("pend_")
        assert session.has_pending()
        assert session.pending[0].expires_at == clock.now + 10.0
        assert _quantity(store, catalog["Coffee Beans"]) == 50.0

    def test_removal_asks(self, catalog, session):
        outcome = session.handle_command(_cmd("remove", "coffee beans", 2))
        assert (outcome.status, outcome.decision.type) == ("pending", "voice")
        assert outcome.message == "Remove 2 pounds of Coffee Beans?"

    def test_large_change_asks_in_detail(self, catalog, session, clock):
        outcome = session.handle_command(_cmd("add", "coffee beans", 40))
        assert outcome.decision.type == "explicit"
        assert outcome.message == "I'll add 40 pounds of Coffee Beans. Large quantity change. Is that correct?"
        assert session.pending[0].expires_at == clock.now + 30.0

    def test_read_only_role_asks(self, catalog, pipeline):
        viewer = pipeline.open_session("s2", "v1", role="viewer")
        outcome = viewer.handle_command(_cmd("add", "coffee beans", 5))
        assert (outcome.status, outcome.decision.type) == ("pending", "explicit")

    def test_yes_applies_and_counts_as_correct(self, catalog, store, session, pipeline):
        session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        outcome = session.respond("yes")
        assert outcome.status == "applied"
        assert _quantity(store, catalog["Coffee Beans"]) == 55.0
        history = pipeline.tracker.history("u1")
        assert (history.correct, history.total) == (1, 1)
        assert not session.has_pending()

    def test_no_cancels_without_counting(self, catalog, store, session, pipeline):
        session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        outcome = session.respond("no")
        assert outcome.status == "cancelled"
        assert _quantity(store, catalog["Coffee Beans"]) == 50.0
        assert pipeline.tracker.history("u1").total == 0

    def test_quantity_correction(self, catalog, store, session, pipeline):
        session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        outcome = session.respond("no, 10")
        assert outcome.status == "applied"
        assert _quantity(store, catalog["Coffee Beans"]) == 60.0
        history = pipeline.tracker.history("u1")
        assert (history.correct, history.total, history.recent_mistakes) == (0, 1, ["quantity"])

    def test_item_correction_resolves_again(self, catalog, store, session):
        session.handle_command(_cmd("add", "sugar", 2, confidence=0.7))
        outcome = session.respond("I meant coffee beans")
        assert outcome.status == "applied"
        assert outcome.result.item.name == "Coffee Beans"
        assert _quantity(store, catalog["Coffee Beans"]) == 52.0
        assert _quantity(store, catalog["Sugar"]) == 30.0

    def test_corrected_command_is_checked_again(self, catalog, store, session):
        session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        outcome = session.respond("no, 500")
        assert (outcome.status, outcome.decision.type) == ("pending", "explicit")
        assert outcome.decision.reason == "Large quantity change"
        assert session.pending[0].command.quantity == 500.0
        assert _quantity(store, catalog["Coffee Beans"]) == 50.0

        outcome = session.respond("yes")
        assert outcome.status == "applied"
        assert _quantity(store, catalog["Coffee Beans"]) == 550.0

    def test_expired_confirmation_never_applied(self, catalog, store, session, clock):
        session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        clock.now += 11
        outcome = session.respond("yes")
        assert outcome.status == "cancelled"
        assert _quantity(store, catalog["Coffee Beans"]) == 50.0

    def test_expire_pending_sweep(self, catalog, session, pipeline, clock):
        session.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        session.handle_command(_cmd("add", "coffee beans", 40))
        clock.now += 11
        outcomes = pipeline.expire_pending()
        assert [o.status for o in outcomes] == ["cancelled"]
        assert len(session.pending) == 1

    def test_reply_with_nothing_pending(self, catalog, session):
        assert session.respond("yes").status == "invalid"


# ---------------------------------------------------------------------------
# Resolution failures and undo
# ---------------------------------------------------------------------------

class TestFailures:
    def test_not_found(self, store, session):
        outcome = session.handle_command(_cmd("add", "coffee beans", 5))
        assert outcome.status == "not_found"
        assert outcome.suggestions == []

    def test_ambiguous(self, catalog, store, session):
        outcome = session.handle_command(_cmd("add", "flour", 5))
        assert outcome.status == "ambiguous"
        assert outcome.suggestions
        assert set(outcome.suggestions) <= set(catalog)


class TestUndo:
    def test_undo_reverts_last_change(self, catalog, store, session):
        session.handle_command(_cmd("add", "coffee beans", 5))
        outcome = session.handle_command(StructuredCommand("undo", "", None, "", 0.95, True))
        assert outcome.status == "undone"
        assert outcome.message == "Undone: Coffee Beans is back to 50 pounds"
        assert _quantity(store, catalog["Coffee Beans"]) == 50.0

    def test_nothing_to_undo(self, catalog, session):
        outcome = session.handle_command(StructuredCommand("undo", "", None, "", 0.95, True))
        assert outcome.status == "not_found"
        assert outcome.message == "Nothing to undo"


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

class TestSessions:
    def test_open_and_get(self, pipeline):
        s = pipeline.open_session("s1", "u1", role="manager")
        assert pipeline.get_session("s1") is s
        assert s.actor.role == "manager"
        assert len(pipeline) == 1

    def test_duplicate_session_rejected(self, pipeline):
        pipeline.open_session("s1", "u1")
        with pytest.raises(ValueError):
            pipeline.open_session("s1", "u2")

    def test_each_session_gets_its_own_interpreter(self, pipeline, factory):
        a = pipeline.open_session("a", "u1")
        b = pipeline.open_session("b", "u2")
        assert a.interpreter is not b.interpreter
        assert len(factory.created) == 2

    def test_close_discards_buffer_and_pending(self, catalog, pipeline, factory):
        s = pipeline.open_session("s1", "u1")
        s.handle_command(_cmd("add", "coffee beans", 5, confidence=0.7))
        s.add_fragment("set the paper cups")
        assert pipeline.close_session("s1") is True

        assert s.buffer.get_current_buffer() == ""
        assert s.buffer.closed
        assert not s.has_pending()
        assert factory.created[0].resets == 1
        assert pipeline.get_session("s1") is None
        assert "s1" not in pipeline.registry
        assert pipeline.close_session("s1") is False

    def test_sweep_drops_expired_undo_records(self, catalog, session, pipeline, clock):
        session.handle_command(_cmd("add", "coffee beans", 5))
        session.handle_command(_cmd("add", "sugar", 2, confidence=0.7))
        clock.now += 169 * 3600

        outcomes = pipeline.sweep()
        assert [o.status for o in outcomes] == ["cancelled"]
        assert pipeline.coordinator.sweep_expired() == 0
        assert session.handle_command(StructuredCommand("undo", "", None, "", 0.95, True)).status == "not_found"

    def test_close_while_interpreting(self, catalog, store, clock):
        interpreter = BlockingInterpreter()
        interpreter.results.append([_cmd("add", "coffee beans", 5)])
        pipeline = VoicePipeline(store, lambda: interpreter, Settings(silence_timeout=0.01), clock=clock)
        s = pipeline.open_session("s1", "u1")
        outcomes = []
        s.on_outcome(outcomes.append)

        s.add_fragment("add coffee beans")
        assert interpreter.started.wait(5)

        closer = threading.Thread(target=pipeline.close_session, args=("s1",))
        closer.start()
        deadline = time.time() + 5
        while not s.closed and time.time() < deadline:
            time.sleep(0.01)
        interpreter.release.set()
        closer.join(5)

        assert not closer.is_alive()
        assert outcomes == []
        assert _quantity(store, catalog["Coffee Beans"]) == 50.0
        assert pipeline.get_session("s1") is None

    def test_evict_idle(self, pipeline):
        stale = pipeline.open_session("stale", "u1")
        pipeline.open_session("fresh", "u2")
        stale.context.last_active = time.time() - 600
        assert pipeline.evict_idle(300) == ["stale"]
        assert pipeline.get_session("stale") is None
        assert pipeline.get_session("fresh") is not None

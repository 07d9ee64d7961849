import os
import random
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from parley.interrupt import InterruptController
from parley.memory import MemorySnapshot
from parley.turns import TurnSlot


def _controller(min_chars=3):
    slot = TurnSlot("test")
    stops = []
    controller = InterruptController(slot, lambda turn, reason: stops.append((turn.turn_id, reason)), min_chars)
    return slot, controller, stops


def test_begin_supersedes_previous_turn():
    slot = TurnSlot("s")
    first = slot.begin("hello", 0.9, MemorySnapshot())
    second = slot.begin("again", 0.9, MemorySnapshot())

    assert first.cancelled
    assert first.token.reason == "superseded"
    assert slot.active is second
    assert slot.is_current(second)
    assert not slot.is_current(first)
    assert [first.turn_id, second.turn_id] == ["s-1", "s-2"]


def test_turns_can_be_tracked_in_sets():
    slot = TurnSlot("s")
    first = slot.begin("same words", 0.9, MemorySnapshot())
    second = slot.begin("same words", 0.9, MemorySnapshot())

    in_flight = {first, second}
    in_flight.discard(first)
    assert in_flight == {second}


def test_release_only_clears_owner():
    slot = TurnSlot()
    first = slot.begin("a", 1.0, MemorySnapshot())
    second = slot.begin("b", 1.0, MemorySnapshot())

    assert slot.release(first) is False
    assert slot.busy
    assert slot.release(second) is True
    assert not slot.busy


def test_short_caption_does_not_interrupt():
    slot, controller, stops = _controller()
    slot.begin("question", 0.9, MemorySnapshot())

    assert controller.observe("uh") is False
    assert controller.observe(" ok ") is False
    assert slot.busy
    assert stops == []


def test_substantive_caption_interrupts_and_notifies_once():
    slot, controller, stops = _controller()
    turn = slot.begin("question", 0.9, MemorySnapshot())

    assert controller.observe("wait stop") is True
    assert controller.observe("wait stop please", is_final=True) is False

    assert turn.cancelled
    assert not slot.busy
    assert stops == [(turn.turn_id, "barge-in (interim)")]
    assert controller.interruptions == 1


def test_idle_slot_ignores_captions():
    _, controller, stops = _controller()
    assert controller.observe("a long sentence while idle") is False
    assert controller.interrupt("manual") is None
    assert stops == []


def test_at_most_one_live_turn_under_random_events():
    rng = random.Random(7)
    slot, controller, _ = _controller()
    issued = []

    for _ in range(500):
        action = rng.choice(["begin", "observe", "release", "interrupt"])
        if action == "begin":
            issued.append(slot.begin("utterance", 0.9, MemorySnapshot()))
        elif action == "observe":
            controller.observe(rng.choice(["hm", "hold on a second"]))
        elif action == "release" and issued:
            slot.release(rng.choice(issued))
        elif action == "interrupt":
            controller.interrupt("test")

        live = [t for t in issued if not t.cancelled and slot.is_current(t)]
        assert len(live) <= 1
        if slot.active is not None:
            assert not slot.active.cancelled

"""
Unit Tests for Event Aggregator.

Test Coverage:
- Latest-wins per entity
- Deterministic display ordering
- Bounded free-text tail
- reset() idempotence
"""

import random

from berth_stream.core.event_aggregator import EventAggregator
from berth_stream.core.frames import StreamMessage


def service(name, action, **extra):
    return {"type": "service", "service": {"name": name, "action": action, **extra}}


def container(name, action, **extra):
    return {"type": "container", "container": {"name": name, "action": action, **extra}}


def network(name, action, **extra):
    return {"type": "network", "network": {"name": name, "action": action, **extra}}


def status(current, total):
    return {"type": "status", "status": {"current": current, "total": total}}


def log(message, kind="log"):
    return {"type": kind, "message": message}


class TestLatestWins:

    def test_service_update_replaces_previous_state(self):
        aggregator = EventAggregator()

        aggregator.process_event(service("web", "Started", duration="1.2s"))
        aggregator.process_event(service("web", "Healthy"))

        display = aggregator.get_display()
        web_lines = [line for line in display if " web " in line]
        assert web_lines == [" ✔ web Healthy"]
        assert not any("Started" in line for line in display)

    def test_reported_entity_keeps_first_seen_position(self):
        aggregator = EventAggregator()

        aggregator.process_event(service("db", "Pulling"))
        aggregator.process_event(service("web", "Pulling"))
        aggregator.process_event(service("db", "Pulled", progress="[=====]", duration="3.0s"))

        assert aggregator.get_display() == [
            " ✔ db Pulled [=====] 3.0s",
            " ✔ web Pulling",
        ]

    def test_status_slot_latest_wins(self):
        aggregator = EventAggregator()

        aggregator.process_event(status(1, 3))
        aggregator.process_event(status(3, 3))

        assert aggregator.get_display() == ["[+] Running 3/3"]


class TestDisplayOrder:

    def test_sections_rendered_in_fixed_order(self):
        aggregator = EventAggregator()

        aggregator.process_event(log("pulling images"))
        aggregator.process_event(network("stack_default", "Created", duration="0.1s"))
        aggregator.process_event(container("stack-web-1", "Started", duration="0.4s"))
        aggregator.process_event(service("web", "Pulled"))
        aggregator.process_event(status(2, 5))

        assert aggregator.get_display() == [
            "[+] Running 2/5",
            " ✔ web Pulled",
            " ✔ Container stack-web-1 Started 0.4s",
            " ✔ Network stack_default Created 0.1s",
            "pulling images",
        ]

    def test_container_progress_not_rendered(self):
        aggregator = EventAggregator()

        aggregator.process_event(container("c1", "Starting", progress="50%"))

        assert aggregator.get_display() == [" ✔ Container c1 Starting"]

    def test_display_text_joins_lines(self):
        aggregator = EventAggregator()
        aggregator.process_event(status(1, 1))
        aggregator.process_event(log("done", kind="complete"))

        assert aggregator.display_text() == "[+] Running 1/1\ndone"


class TestFreeText:

    def test_keeps_only_last_ten_messages(self):
        aggregator = EventAggregator()

        for i in range(15):
            aggregator.process_event(log(f"line {i}"))

        assert aggregator.get_display() == [f"line {i}" for i in range(5, 15)]

    def test_all_narrative_kinds_collected(self):
        aggregator = EventAggregator()

        for kind in ("connection", "log", "error", "complete"):
            aggregator.process_event(log(kind, kind=kind))

        assert aggregator.get_display() == ["connection", "log", "error", "complete"]

    def test_messages_without_text_ignored(self):
        aggregator = EventAggregator()

        aggregator.process_event({"type": "complete", "success": True})

        assert aggregator.get_display() == []

    def test_accepts_stream_message(self):
        aggregator = EventAggregator()

        assert aggregator.process_event(StreamMessage.log("hello")) is True
        assert aggregator.get_display() == ["hello"]

    def test_invalid_event_ignored(self):
        aggregator = EventAggregator()

        assert aggregator.process_event({"type": "bogus"}) is False
        assert aggregator.process_event({"type": "service", "service": {"name": "x"}}) is False
        assert aggregator.get_display() == []


class TestReset:

    def test_reset_clears_everything(self):
        aggregator = EventAggregator()
        aggregator.process_event(status(1, 2))
        aggregator.process_event(service("web", "Started"))
        aggregator.process_event(log("hello"))

        aggregator.reset()

        assert aggregator.get_display() == []
        assert aggregator.overall_status is None

    def test_reset_then_replay_equals_fresh_replay(self):
        rng = random.Random(1234)
        pool = [
            status(1, 4), status(4, 4),
            service("web", "Pulling"), service("web", "Started", duration="1s"),
            service("db", "Created"), container("stack-db-1", "Healthy"),
            network("stack_default", "Created"),
            log("a"), log("b", kind="error"), log("c", kind="connection"),
        ]

        for _ in range(25):
            history = [rng.choice(pool) for _ in range(rng.randint(0, 30))]
            subset = [rng.choice(pool) for _ in range(rng.randint(0, 30))]

            reused = EventAggregator()
            for event in history:
                reused.process_event(event)
            reused.reset()
            for event in subset:
                reused.process_event(event)

            fresh = EventAggregator()
            for event in subset:
                fresh.process_event(event)

            assert reused.get_display() == fresh.get_display()

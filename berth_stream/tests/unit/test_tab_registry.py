"""
Unit Tests for the terminal tab registry.

Test Coverage:
- Target de-duplication and the terminal cap
- Neighbour selection on close
- Panel visibility and height persistence
- Session lifecycle ownership
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from berth_stream.api.client import BerthClient, TerminalConnectionInfo
from berth_stream.core.storage import MemoryStore, StorageError
from berth_stream.core.tab_registry import (
    PANEL_STATE_KEY,
    TabNotFoundError,
    TabRegistry,
    TerminalLimitError,
)
from berth_stream.core.terminal_session import SessionState


def make_client():
    client = Mock(spec=BerthClient)
    client.negotiate_terminal = AsyncMock(return_value=TerminalConnectionInfo(
        websocket_url="wss://agent.example/ws/terminal/abc",
        access_token="tok",
        stack_name="web",
        service="app",
    ))
    return client


class TestOpenTerminal:

    def test_open_activates_and_shows_panel(self, config):
        registry = TabRegistry(make_client(), config=config)

        tab = registry.open_terminal(1, "web", "app")

        assert registry.active_tab is tab
        assert registry.is_open
        assert tab.label == "app"
        assert tab.id.startswith("terminal-")
        assert tab.session.state is SessionState.IDLE

    def test_same_target_reactivates_existing_tab(self, config):
        registry = TabRegistry(make_client(), config=config)
        first = registry.open_terminal(1, "web", "app", "web-app-1")
        registry.open_terminal(1, "web", "db")
        registry.toggle_panel()

        again = registry.open_terminal(1, "web", "app", "web-app-1")

        assert again is first
        assert len(registry.tabs) == 2
        assert registry.active_tab_id == first.id
        assert registry.is_open

    def test_container_distinguishes_targets(self, config):
        registry = TabRegistry(make_client(), config=config)

        a = registry.open_terminal(1, "web", "app", "web-app-1")
        b = registry.open_terminal(1, "web", "app", "web-app-2")
        c = registry.open_terminal(2, "web", "app", "web-app-1")

        assert len({a.id, b.id, c.id}) == 3
        assert b.label == "app:web-app-2"

    def test_cap_enforced(self, config):
        registry = TabRegistry(make_client(), config=config)
        for i in range(config.max_terminals):
            registry.open_terminal(1, "web", f"svc-{i}")

        with pytest.raises(TerminalLimitError) as exc_info:
            registry.open_terminal(1, "web", "one-too-many")

        assert exc_info.value.limit == 10
        assert len(registry.tabs) == 10

    def test_reopen_at_cap_is_allowed(self, config):
        registry = TabRegistry(make_client(), config=config)
        for i in range(config.max_terminals):
            registry.open_terminal(1, "web", f"svc-{i}")

        tab = registry.open_terminal(1, "web", "svc-3")

        assert registry.active_tab is tab

    def test_closed_registry_rejects_open(self, config):
        registry = TabRegistry(make_client(), config=config)
        registry.close()

        with pytest.raises(RuntimeError):
            registry.open_terminal(1, "web", "app")


class TestCloseTerminal:

    def open_three(self, config):
        registry = TabRegistry(make_client(), config=config)
        tabs = [registry.open_terminal(1, "web", name) for name in ("a", "b", "c")]
        return registry, tabs

    def test_closing_active_selects_previous(self, config):
        registry, (a, b, c) = self.open_three(config)
        registry.set_active_tab(b.id)

        assert registry.close_terminal(b.id) is True

        assert registry.active_tab_id == a.id
        assert [t.id for t in registry.tabs] == [a.id, c.id]

    def test_closing_first_selects_new_first(self, config):
        registry, (a, b, c) = self.open_three(config)
        registry.set_active_tab(a.id)

        registry.close_terminal(a.id)

        assert registry.active_tab_id == b.id

    def test_closing_inactive_keeps_selection(self, config):
        registry, (a, b, c) = self.open_three(config)

        registry.close_terminal(a.id)

        assert registry.active_tab_id == c.id

    def test_closing_last_tab_hides_panel(self, config):
        registry = TabRegistry(make_client(), config=config)
        tab = registry.open_terminal(1, "web", "app")

        registry.close_terminal(tab.id)

        assert registry.tabs == []
        assert registry.active_tab_id is None
        assert registry.is_open is False
        assert tab.session.state is SessionState.CLOSED

    def test_unknown_tab(self, config):
        registry = TabRegistry(make_client(), config=config)

        assert registry.close_terminal("terminal-missing") is False
        with pytest.raises(TabNotFoundError):
            registry.set_active_tab("terminal-missing")


class TestPanelState:

    def test_height_clamped(self, config):
        registry = TabRegistry(make_client(), config=config)

        assert registry.set_panel_height(50) == config.min_panel_height
        assert registry.set_panel_height(5000) == config.max_panel_height
        assert registry.set_panel_height(640) == 640

    def test_preference_persisted_and_restored(self, config):
        store = MemoryStore()
        registry = TabRegistry(make_client(), store, config=config)

        registry.toggle_panel()
        registry.set_panel_height(520)

        assert store.load(PANEL_STATE_KEY) == {"is_open": True, "height": 520}
        restored = TabRegistry(make_client(), store, config=config)
        assert restored.is_open is True
        assert restored.height == 520
        assert restored.tabs == []

    def test_out_of_range_stored_height_clamped(self, config):
        store = MemoryStore()
        store.save(PANEL_STATE_KEY, {"is_open": False, "height": 99999})

        registry = TabRegistry(make_client(), store, config=config)

        assert registry.height == config.max_panel_height

    def test_storage_failure_falls_back_to_defaults(self, config):
        store = Mock()
        store.load.side_effect = StorageError("unreadable")
        store.save.side_effect = StorageError("read-only")

        registry = TabRegistry(make_client(), store, config=config)
        registry.toggle_panel()

        assert registry.height == config.default_panel_height
        assert registry.is_open is True


@pytest.mark.asyncio
class TestSessionOwnership:

    async def test_open_starts_session(self, config, connector, wait_until):
        registry = TabRegistry(make_client(), config=config, connect_factory=connector)

        tab = registry.open_terminal(1, "web", "app", cols=100, rows=30)
        await wait_until(lambda: connector.last is not None and connector.last.sent)
        connector.last.feed({"type": "success", "session_id": "s-1"})
        await wait_until(lambda: tab.session.is_connected)

        assert connector.last.sent_frames[0]["cols"] == 100
        await registry.aclose()
        assert tab.session.state is SessionState.CLOSED

    async def test_close_terminal_closes_session(self, config, connector, wait_until):
        registry = TabRegistry(make_client(), config=config, connect_factory=connector)
        tab = registry.open_terminal(1, "web", "app")
        await wait_until(lambda: connector.last is not None and connector.last.sent)
        ws = connector.last
        ws.feed({"type": "success", "session_id": "s-1"})
        await wait_until(lambda: tab.session.is_connected)

        registry.close_terminal(tab.id)
        await wait_until(lambda: tab.session.is_finished)

        assert ws.sent_frames[-1] == {"type": "close", "session_id": "s-1", "exit_code": 0}
        registry.close()

    async def test_close_aborts_connecting_sessions(self, config, connector, wait_until):
        registry = TabRegistry(make_client(), config=config, connect_factory=connector)
        tab = registry.open_terminal(1, "web", "app")
        await wait_until(lambda: connector.last is not None)

        registry.close()
        await asyncio.sleep(0.02)

        assert tab.session.state is SessionState.CLOSED
        assert registry.tabs == []

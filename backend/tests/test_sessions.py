"""Tests for the node-local session table."""
import pytest

from agentlink.agents.schemas import Role
from agentlink.agents.sessions import LocalSessionTable


class TestLocalSessionTable:
    @pytest.mark.asyncio
    async def test_send_to_attached_session(self, make_socket):
        table = LocalSessionTable()
        ws = make_socket()
        table.attach("a1", ws, Role.A)

        assert await table.send_to("a1", {"type": "x"}) is True
        assert ws.sent == [{"type": "x"}]
        assert await table.send_to("nobody", {"type": "x"}) is False

    @pytest.mark.asyncio
    async def test_broadcast_reaches_all_and_drops_dead(self, make_socket):
        table = LocalSessionTable()
        alive, dead = make_socket(), make_socket(fail=True)
        table.attach("a1", alive, Role.A)
        table.attach("b1", dead, Role.B)

        assert await table.broadcast({"type": "presence"}) == 1
        assert alive.sent == [{"type": "presence"}]
        assert table.identities() == ["a1"]

    def test_detach_checks_socket(self, make_socket):
        table = LocalSessionTable()
        old, new = make_socket(), make_socket()
        table.attach("a1", old, Role.A)
        table.attach("a1", new, Role.A)

        assert table.detach("a1", old) is None
        assert "a1" in table
        assert table.detach("a1", new).websocket is new
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_close(self, make_socket):
        table = LocalSessionTable()
        ws = make_socket()
        table.attach("a1", ws, Role.A)

        assert await table.close("a1", code=4001, reason="Agent A reassigned") is True
        assert ws.closed == (4001, "Agent A reassigned")
        assert "a1" not in table
        assert await table.close("a1") is False

import asyncio
import json
import unittest

from api.websocket import ConnectionManager


class FakeUIClient:
    """Stands in for a UI WebSocket."""

    def __init__(self, stall: bool = False, fail: bool = False) -> None:
        self.stall = stall
        self.fail = fail
        self.accepted = False
        self.received: list[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.stall:
            await asyncio.Event().wait()
        if self.fail:
            raise RuntimeError("client gone")
        self.received.append(json.loads(text))

    def events(self) -> list[str]:
        return [m["event"] for m in self.received]


class ConnectionManagerTest(unittest.IsolatedAsyncioTestCase):

    async def test_new_client_gets_current_state_first(self):
        manager = ConnectionManager(snapshot=lambda: [("status", {"connected": True}), ("devices", {"devices": []})])
        client = FakeUIClient()

        await manager.connect(client)
        await manager.broadcast("notification", {"type": "info", "message": "hi"})

        self.assertTrue(client.accepted)
        self.assertEqual(client.events(), ["status", "devices", "notification"])
        self.assertEqual(client.received[2]["data"], {"type": "info", "message": "hi"})

    async def test_stalled_client_is_dropped_without_holding_up_others(self):
        manager = ConnectionManager(send_timeout=0.1)
        healthy, stalled, broken = FakeUIClient(), FakeUIClient(stall=True), FakeUIClient(fail=True)
        for client in (healthy, stalled, broken):
            await manager.connect(client)

        await asyncio.wait_for(manager.handle_event("transfer_progress", {"transferred_bytes": 10}), timeout=1)
        await manager.handle_event("transfer_state", {"state": "completed"})

        self.assertEqual(healthy.events(), ["transfer_progress", "transfer_state"])
        self.assertEqual(len(manager), 1)

    async def test_client_that_stalls_during_replay_is_not_registered(self):
        manager = ConnectionManager(snapshot=lambda: [("status", {"connected": False})], send_timeout=0.05)

        await manager.connect(FakeUIClient(stall=True))

        self.assertEqual(len(manager), 0)

    async def test_disconnect_unknown_client_is_noop(self):
        manager = ConnectionManager()
        await manager.disconnect(FakeUIClient())
        self.assertEqual(len(manager), 0)


if __name__ == "__main__":
    unittest.main()

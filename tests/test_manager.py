import asyncio
import json
import os
import tempfile
import unittest

from fakes import EventRecorder, FakeChannel, FakeLink, FakeSignaling

from errors import (
    DeviceNotFoundError,
    NegotiationError,
    NoDeviceSelectedError,
    NoSessionError,
    SessionBusyError,
)
from transfer.manager import TransferManager, UIState
from transfer.storage import DirectorySink

PHONE = {"id": "phone", "name": "Phone", "icon": "android", "online": True}
TABLET = {"id": "tablet", "name": "Tablet", "icon": "ipad", "online": True}
ME = {"id": "me", "name": "My Laptop", "icon": "linux", "online": True}


def offer_from(sender, file_name="notes.txt", size=6):
    return {
        "type": "offer",
        "from": sender,
        "data": {"type": "offer", "sdp": "v=0 remote"},
        "fileName": file_name,
        "fileSize": size,
        "fileType": "text/plain",
        "fileCount": 1,
    }


class ManagerTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.signaling = FakeSignaling()
        self.events = EventRecorder()
        self.manager = TransferManager(
            self.signaling,
            DirectorySink(os.path.join(self._tmp.name, "downloads")),
            link_factory=FakeLink,
            session_options={"grace_delay": 0, "engine_options": {"poll_interval": 0}},
        )
        self.manager.on_event(self.events)

    async def asyncTearDown(self):
        await self.manager.cancel()
        self._tmp.cleanup()

    async def devices(self, *entries):
        await self.signaling.receive({"type": "devices", "devices": list(entries)})

    async def settle(self, condition):
        for _ in range(100):
            if condition():
                return
            await asyncio.sleep(0.01)
        self.fail("condition never became true")

    def make_file(self, name, data=b"hello!"):
        path = os.path.join(self._tmp.name, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def last_ui_state(self):
        return self.events.of_type("ui_state")[-1]["state"]


class SelectionTest(ManagerTestCase):

    async def test_single_device_is_auto_selected(self):
        await self.devices(ME, PHONE)

        self.assertEqual([d.id for d in self.manager.devices], ["phone"])
        self.assertEqual(self.manager.selected_device.id, "phone")
        self.assertEqual(self.last_ui_state(), UIState.READY.value)
        self.assertIn(
            {"type": "info", "message": "Ready to send files to Phone"},
            self.events.of_type("notification"),
        )

    async def test_second_device_clears_auto_selection(self):
        await self.devices(PHONE)
        await self.devices(PHONE, TABLET)

        self.assertIsNone(self.manager.selected_device)
        self.assertEqual(self.last_ui_state(), UIState.SELECTING.value)
        self.assertEqual(self.events.of_type("devices")[-1]["selected"], None)

    async def test_manual_selection_survives_new_devices(self):
        await self.devices(PHONE, TABLET)
        await self.manager.select_device("tablet")
        await self.devices(PHONE, TABLET, {"id": "tv", "name": "TV", "icon": "unknown"})

        self.assertEqual(self.manager.selected_device.id, "tablet")
        self.assertEqual(self.last_ui_state(), UIState.READY.value)

    async def test_vanished_selection_is_cleared(self):
        await self.devices(PHONE, TABLET)
        await self.manager.select_device("tablet")
        await self.devices(PHONE)

        # The remaining lone device takes over.
        self.assertEqual(self.manager.selected_device.id, "phone")

        await self.devices()
        self.assertIsNone(self.manager.selected_device)
        self.assertEqual(self.last_ui_state(), UIState.NO_DEVICES.value)

    async def test_select_unknown_device(self):
        await self.devices(PHONE)
        with self.assertRaises(DeviceNotFoundError):
            await self.manager.select_device("ghost")

    async def test_invalid_entries_are_skipped(self):
        await self.devices(PHONE, {"name": "no id"})
        self.assertEqual([d.id for d in self.manager.devices], ["phone"])


class OutgoingTransferTest(ManagerTestCase):

    async def test_send_requires_selection(self):
        await self.devices(PHONE, TABLET)
        with self.assertRaises(NoDeviceSelectedError):
            await self.manager.send_files([self.make_file("a.txt")])

    async def test_offer_goes_to_selected_device(self):
        await self.devices(PHONE)
        info = await self.manager.send_files([self.make_file("a.txt")])

        offer = self.signaling.sent[0]
        self.assertEqual(offer["type"], "offer")
        self.assertEqual(offer["target"], "phone")
        self.assertEqual(offer["fileName"], "a.txt")
        self.assertEqual(info.state, "awaiting_acceptance")
        self.assertEqual(self.last_ui_state(), UIState.TRANSFERRING.value)

        with self.assertRaises(SessionBusyError):
            await self.manager.send_files([self.make_file("b.txt")])

    async def test_decline_returns_to_ready(self):
        await self.devices(PHONE)
        await self.manager.send_files([self.make_file("a.txt")])

        await self.signaling.receive({"type": "transfer-reject", "from": "tablet"})
        self.assertIsNotNone(self.manager.session)

        await self.signaling.receive({"type": "transfer-reject", "from": "phone"})

        self.assertIsNone(self.manager.session)
        self.assertEqual(self.manager.selected_device.id, "phone")
        self.assertEqual(self.last_ui_state(), UIState.READY.value)
        self.assertEqual(self.events.of_type("transfer_state")[-1]["state"], "rejected")
        self.assertIn(
            {"type": "warning", "message": "Transfer was declined"},
            self.events.of_type("notification"),
        )

    async def test_cannot_accept_own_offer(self):
        await self.devices(PHONE)
        await self.manager.send_files([self.make_file("a.txt")])
        with self.assertRaises(NegotiationError):
            await self.manager.accept()

    async def test_relay_loss_fails_the_session(self):
        await self.devices(PHONE)
        await self.manager.send_files([self.make_file("a.txt")])

        await self.signaling.set_connected(False)

        self.assertIsNone(self.manager.session)
        self.assertEqual(self.manager.devices, [])
        self.assertEqual(self.events.of_type("status")[-1], {"connected": False})
        failed = self.events.of_type("transfer_state")[-1]
        self.assertEqual(failed["state"], "failed")
        self.assertEqual(failed["error_message"], "Connection to relay lost")
        self.assertEqual(self.last_ui_state(), UIState.NO_DEVICES.value)


class IncomingTransferTest(ManagerTestCase):

    async def test_offer_waits_for_consent(self):
        await self.devices(PHONE, TABLET)
        await self.signaling.receive(offer_from("tablet"))

        self.assertEqual(self.manager.selected_device.id, "tablet")
        self.assertEqual(self.last_ui_state(), UIState.AWAITING_CONSENT.value)
        request = self.events.of_type("transfer_request")[0]
        self.assertEqual(request["file_names"], "notes.txt")
        self.assertEqual(request["total_bytes"], 6)
        self.assertEqual(request["direction"], "receiving")
        self.assertEqual(self.signaling.sent, [])

    async def test_offer_from_unknown_device_is_dropped(self):
        await self.devices(PHONE)
        await self.signaling.receive(offer_from("stranger"))

        self.assertIsNone(self.manager.session)
        self.assertEqual(self.signaling.sent, [])

    async def test_busy_device_declines_second_offer(self):
        await self.devices(PHONE, TABLET)
        await self.signaling.receive(offer_from("phone"))
        await self.signaling.receive(offer_from("tablet"))

        self.assertEqual(self.signaling.sent, [{"type": "transfer-reject", "target": "tablet"}])
        self.assertEqual(self.manager.session.peer_device_id, "phone")

    async def test_reject(self):
        await self.devices(PHONE)
        await self.signaling.receive(offer_from("phone"))

        await self.manager.reject()

        self.assertEqual(self.signaling.sent, [{"type": "transfer-reject", "target": "phone"}])
        self.assertIsNone(self.manager.session)
        self.assertIn(
            {"type": "warning", "message": "Transfer declined"},
            self.events.of_type("notification"),
        )

    async def test_lone_device_after_incoming_transfer_counts_as_auto_selected(self):
        await self.devices(PHONE)
        await self.signaling.receive(offer_from("phone"))
        await self.manager.reject()
        self.assertEqual(self.manager.selected_device.id, "phone")

        await self.devices(PHONE, TABLET)

        self.assertIsNone(self.manager.selected_device)
        self.assertEqual(self.last_ui_state(), UIState.SELECTING.value)

    async def test_accept_without_offer(self):
        with self.assertRaises(NoSessionError):
            await self.manager.accept()

    async def test_accepted_files_are_saved(self):
        await self.devices(PHONE)
        await self.signaling.receive(offer_from("phone", "notes.txt", 6))
        session = self.manager.session

        await self.manager.accept()
        self.assertEqual([m["type"] for m in self.signaling.sent], ["transfer-accept", "answer"])
        self.assertEqual(self.last_ui_state(), UIState.TRANSFERRING.value)

        channel = FakeChannel(ready_state="connecting")
        session.link.on_channel(channel)
        await channel.open()
        for frame in (
            json.dumps({"type": "file-start", "name": "notes.txt", "size": 6, "mimeType": "text/plain", "index": 0, "total": 1}),
            b"hel",
            b"lo!",
            json.dumps({"type": "file-end"}),
            json.dumps({"type": "transfer-complete"}),
        ):
            await channel.deliver(frame)
        await self.settle(lambda: self.manager.session is None)

        saved = self.events.of_type("file_received")
        self.assertEqual(len(saved), 1)
        with open(saved[0]["path"], "rb") as f:
            self.assertEqual(f.read(), b"hello!")
        self.assertEqual(self.events.of_type("transfer_state")[-1]["state"], "completed")
        self.assertEqual(self.last_ui_state(), UIState.READY.value)

    async def test_candidates_are_routed_to_the_session(self):
        await self.devices(PHONE)
        await self.signaling.receive(offer_from("phone"))
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.2 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

        await self.signaling.receive({"type": "ice-candidate", "from": "phone", "data": candidate})
        await self.manager.accept()

        self.assertEqual(self.manager.session.link.candidates, [candidate])


class RenameTest(ManagerTestCase):

    async def test_rename_reregisters(self):
        await self.manager.rename("  Studio Mac ")
        await self.manager.rename("Studio Mac")
        await self.manager.rename("   ")

        self.assertEqual(self.signaling.registrations, ["Studio Mac"])
        self.assertEqual(self.manager.device_name, "Studio Mac")


if __name__ == "__main__":
    unittest.main()

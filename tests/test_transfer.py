#!/usr/bin/env python3
"""
End-to-end tests: two TransferManagers talking over loopback TCP.

Covers the full request -> accept -> stream -> end flow, explicit
rejection, the busy policy, timeouts and cancellation on either side.
"""

import asyncio
import json
import os
import socket
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from discovery.identity import DeviceIdentity
from discovery.models import Device
from transfer.files import entries_from_paths
from transfer.manager import TransferManager
from transfer.models import FileEntry, ManifestEntry, TransferRequestMessage


class EventLog:
    """Collects manager events and lets a test wait for one."""

    def __init__(self):
        self.events = []
        self._changed = asyncio.Event()
        self.hooks = []

    async def __call__(self, kind, data):
        self.events.append((kind, data))
        for hook in self.hooks:
            hook(kind, data)
        self._changed.set()

    def of(self, kind):
        return [d for k, d in self.events if k == kind]

    async def wait_for(self, *kinds, timeout=5.0):
        async def _wait():
            while True:
                for k, d in self.events:
                    if k in kinds:
                        return k, d
                self._changed.clear()
                await self._changed.wait()

        return await asyncio.wait_for(_wait(), timeout)


class TransferTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.src = base / "src"
        self.dest = base / "dest"
        self.src.mkdir()

        self.sender = TransferManager(
            DeviceIdentity(config_dir=base / "s", device_name="Sender"),
            save_dir=str(base / "sender-inbox"),
            host="127.0.0.1",
            port=0,
            chunk_size=4096,
        )
        self.receiver = TransferManager(
            DeviceIdentity(config_dir=base / "r", device_name="Receiver"),
            save_dir=str(self.dest),
            host="127.0.0.1",
            port=0,
            auto_accept=True,
            chunk_size=4096,
        )
        await self.sender.start()
        await self.receiver.start()

        self.sent = EventLog()
        self.received = EventLog()
        self.sender.on_event(self.sent)
        self.receiver.on_event(self.received)

    async def asyncTearDown(self):
        await self.sender.stop()
        await self.receiver.stop()
        self._tmp.cleanup()

    def receiver_device(self, port=None):
        return Device(
            device_id="receiver",
            device_name="Receiver",
            ip_address="127.0.0.1",
            transfer_port=port or self.receiver.receiver_port,
            platform="linux",
            last_seen=0.0,
        )

    def make_file(self, relative, size):
        path = self.src / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(os.urandom(size))
        return path


class TestRoundTrip(TransferTestCase):

    async def test_files_and_folders_arrive_identical(self):
        single = self.make_file("single.bin", 100_000)
        self.make_file("tree/a.txt", 1)
        self.make_file("tree/empty.txt", 0)
        self.make_file("tree/nested/deep.bin", 12_345)
        (self.src / "tree" / "hollow").mkdir()

        files = entries_from_paths([single, self.src / "tree"])
        transfer_id = await self.sender.send(self.receiver_device(), files)

        kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_complete", data)
        self.assertGreater(data["speed_bps"], 0)
        kind, data = await self.received.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_complete", data)
        # the final throughput sample survives into the terminal report
        self.assertGreater(data["speed_bps"], 0)

        # the mirror task shares the sender's identifier
        self.assertEqual(data["transfer_id"], transfer_id)
        self.assertEqual(data["peer_device_name"], "Sender")
        self.assertEqual(data["direction"], "inbound")

        for relative in ("tree/a.txt", "tree/empty.txt", "tree/nested/deep.bin"):
            self.assertEqual(
                (self.dest / relative).read_bytes(),
                (self.src / relative).read_bytes(),
                relative,
            )
        self.assertEqual((self.dest / "single.bin").read_bytes(), single.read_bytes())
        self.assertTrue((self.dest / "tree" / "hollow").is_dir())
        self.assertEqual(list((self.dest / "tree" / "hollow").iterdir()), [])

    async def test_hundred_percent_reported_exactly_once(self):
        self.make_file("big.bin", 50_000)
        files = entries_from_paths([self.src / "big.bin"])
        await self.sender.send(self.receiver_device(), files)
        await self.received.wait_for("transfer_complete", "transfer_error")

        percents = [p["progress_percent"] for p in self.received.of("transfer_progress")]
        self.assertEqual(percents.count(100.0), 1)
        self.assertEqual(percents[-1], 100.0)
        self.assertEqual(self.received.of("transfer_progress")[-1]["transferred"], 50_000)

    async def test_finished_transfers_leave_the_active_table(self):
        self.make_file("x.bin", 10)
        transfer_id = await self.sender.send(self.receiver_device(), entries_from_paths([self.src / "x.bin"]))
        self.assertIsNotNone(self.sender.get_transfer(transfer_id))
        await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertIsNone(self.sender.get_transfer(transfer_id))
        self.assertEqual(self.sender.get_transfers(), [])

    async def test_send_rejects_missing_source(self):
        entries = entries_from_paths([self.make_file("gone.bin", 3)])
        os.remove(entries[0].path)
        with self.assertRaises(ValueError):
            await self.sender.send(self.receiver_device(), entries)

    async def test_declared_size_is_read_from_disk(self):
        source = self.make_file("sized.bin", 10)
        stale = FileEntry(name="sized.bin", size=3, path=str(source))
        transfer_id = await self.sender.send(self.receiver_device(), [stale])
        self.assertEqual(self.sender.get_transfer(transfer_id).total_size, 10)

        kind, data = await self.received.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_complete", data)
        self.assertEqual((self.dest / "sized.bin").read_bytes(), source.read_bytes())


class TestDecisions(TransferTestCase):

    async def test_rejection_writes_nothing(self):
        self.receiver.auto_accept = False
        self.received.hooks.append(
            lambda kind, data: kind == "transfer_request"
            and self.receiver.respond_to_request(data["transfer_id"], accept=False)
        )
        self.make_file("a.bin", 1000)
        await self.sender.send(self.receiver_device(), entries_from_paths([self.src / "a.bin"]))

        kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_error")
        self.assertEqual(data["status"], "rejected")
        await self.received.wait_for("transfer_error")
        self.assertEqual(list(self.dest.iterdir()), [])
        self.assertEqual(self.received.of("transfer_progress"), [])

    async def test_explicit_accept(self):
        self.receiver.auto_accept = False
        self.received.hooks.append(
            lambda kind, data: kind == "transfer_request"
            and self.receiver.respond_to_request(data["transfer_id"], accept=True)
        )
        self.make_file("a.bin", 1000)
        await self.sender.send(self.receiver_device(), entries_from_paths([self.src / "a.bin"]))
        kind, _ = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_complete")
        self.assertEqual((self.dest / "a.bin").stat().st_size, 1000)

    async def test_unanswered_request_times_out(self):
        self.receiver.auto_accept = False
        self.receiver.accept_timeout = 0.1
        self.make_file("a.bin", 10)
        await self.sender.send(self.receiver_device(), entries_from_paths([self.src / "a.bin"]))
        kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(data["status"], "rejected")
        self.assertEqual(data["error"], "No response from user")

    async def test_busy_receiver_rejects_without_asking(self):
        self.receiver.auto_accept = False
        await self.receiver._stream_gate.acquire()
        try:
            self.make_file("a.bin", 10)
            await self.sender.send(self.receiver_device(), entries_from_paths([self.src / "a.bin"]))
            kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        finally:
            self.receiver._stream_gate.release()
        self.assertEqual(data["status"], "rejected")
        self.assertEqual(data["error"], "busy")
        self.assertEqual(self.received.of("transfer_request"), [])

    async def test_unreachable_peer_fails(self):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            closed_port = s.getsockname()[1]
        self.make_file("a.bin", 10)
        await self.sender.send(self.receiver_device(port=closed_port), entries_from_paths([self.src / "a.bin"]))
        kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(data["status"], "failed")

    async def test_inbound_accepted_while_outbound_awaits_decision(self):
        async def undecided_peer(reader, writer):
            await reader.readline()
            await reader.read()
            writer.close()

        peer = await asyncio.start_server(undecided_peer, "127.0.0.1", 0)

        async def close_peer():
            peer.close()
            await peer.wait_closed()

        self.addAsyncCleanup(close_peer)
        self.make_file("out.bin", 10)
        undecided = self.receiver_device(port=peer.sockets[0].getsockname()[1])
        outbound_id = await self.sender.send(undecided, entries_from_paths([self.src / "out.bin"]))
        while self.sender.get_transfer(outbound_id).status != "awaiting_acceptance":
            await asyncio.sleep(0.01)

        # the other direction: receiver sends to sender, which accepts on its own
        self.sender.auto_accept = True
        back = Device(
            device_id="sender",
            device_name="Sender",
            ip_address="127.0.0.1",
            transfer_port=self.sender.receiver_port,
            platform="linux",
            last_seen=0.0,
        )
        source = self.make_file("back.bin", 2048)
        await self.receiver.send(back, entries_from_paths([source]))

        kind, data = await self.received.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_complete", data)
        self.assertEqual((Path(self.sender.save_dir) / "back.bin").read_bytes(), source.read_bytes())
        self.assertEqual(self.sender.get_transfer(outbound_id).status, "awaiting_acceptance")

    async def test_silent_sender_times_out_and_frees_the_gate(self):
        self.receiver.idle_timeout = 0.2
        request = TransferRequestMessage(
            total_size=10,
            files=[ManifestEntry(name="a.bin", size=10)],
            transfer_id="quiet-1",
        )
        reader, writer = await asyncio.open_connection("127.0.0.1", self.receiver.receiver_port)
        try:
            writer.write(request.encode())
            await writer.drain()
            self.assertTrue(json.loads(await reader.readline())["accepted"])

            kind, data = await self.received.wait_for("transfer_complete", "transfer_error")
            self.assertEqual(data["status"], "failed")
            self.assertEqual(data["error"], "Timed out")
            self.assertFalse(self.receiver._stream_gate.locked())
            self.assertEqual(self.receiver.get_transfers(), [])
        finally:
            writer.close()

        # a later transfer is no longer turned away as busy
        self.make_file("next.bin", 10)
        await self.sender.send(self.receiver_device(), entries_from_paths([self.src / "next.bin"]))
        kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_complete", data)


class TestCancellation(TransferTestCase):

    async def test_sender_cancel_mid_stream(self):
        self.sender.progress_interval = 0.0
        source = self.make_file("big.bin", 1_000_000)
        transfer_id = await self.sender.send(self.receiver_device(), entries_from_paths([source]))
        self.sent.hooks.append(
            lambda kind, data: kind == "transfer_progress" and self.sender.cancel_transfer(transfer_id)
        )

        kind, data = await self.sent.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_error")
        self.assertEqual(data["status"], "cancelled")

        # the receiver sees the connection drop; what it wrote so far stays
        kind, data = await self.received.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(data["status"], "failed")
        written = (self.dest / "big.bin").read_bytes()
        self.assertLess(len(written), 1_000_000)
        self.assertEqual(written, source.read_bytes()[:len(written)])

    async def test_receiver_cancel_mid_stream(self):
        self.receiver.progress_interval = 0.0
        source = self.make_file("big.bin", 1_000_000)
        self.received.hooks.append(
            lambda kind, data: kind == "transfer_progress"
            and self.receiver.cancel_transfer(data["transfer_id"])
        )
        await self.sender.send(self.receiver_device(), entries_from_paths([source]))

        kind, data = await self.received.wait_for("transfer_complete", "transfer_error")
        self.assertEqual(kind, "transfer_error")
        self.assertEqual(data["status"], "cancelled")
        # the sender only learns of it when its writes or the ack wait hit the closed socket
        await self.sent.wait_for("transfer_complete", "transfer_error")

        written = (self.dest / "big.bin").read_bytes()
        self.assertGreater(len(written), 0)
        self.assertLess(len(written), 1_000_000)
        self.assertEqual(written, source.read_bytes()[:len(written)])

    async def test_cancel_unknown_transfer(self):
        self.assertFalse(self.sender.cancel_transfer("nope"))


if __name__ == "__main__":
    unittest.main()

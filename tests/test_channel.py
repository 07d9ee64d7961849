import asyncio
import json
import os
import sys

import websockets

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import settle
from parley import channel as msg
from parley.channel import ClientChannel
from parley.memory import MemorySnapshot


class FakeClientSocket:
    def __init__(self, fail_after=None):
        self.frames = []
        self.fail_after = fail_after

    async def send(self, frame):
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        await asyncio.sleep(0)
        self.frames.append(frame)


def test_frames_leave_in_enqueue_order():
    sock = FakeClientSocket()

    async def scenario():
        channel = ClientChannel(sock)
        channel.start()
        channel.send_json(msg.reply("Hello."))
        channel.send_audio(b"chunk-0")
        channel.send_json(msg.synthesis_complete())
        await channel.close()
        return channel

    channel = asyncio.run(scenario())
    assert [f if isinstance(f, bytes) else json.loads(f)["type"] for f in sock.frames] == [
        "reply", b"chunk-0", "synthesis_complete"]
    assert channel.frames_sent == 3


def test_closed_channel_refuses_frames():
    sock = FakeClientSocket()

    async def scenario():
        channel = ClientChannel(sock)
        channel.start()
        await channel.close()
        await channel.close()
        return channel.send_json(msg.status(msg.STATUS_LISTENING)), channel.send_audio(b"late")

    assert asyncio.run(scenario()) == (False, False)
    assert sock.frames == []


def test_socket_closure_marks_channel_closed():
    sock = FakeClientSocket(fail_after=1)

    async def scenario():
        channel = ClientChannel(sock)
        channel.start()
        channel.send_json(msg.status(msg.STATUS_THINKING))
        channel.send_json(msg.reply("one"))
        await settle()
        return channel

    channel = asyncio.run(scenario())
    assert channel.closed
    assert channel.send_audio(b"x") is False
    assert len(sock.frames) == 1


def test_message_builders():
    assert msg.transcript("hi", False) == {"type": "transcript", "text": "hi", "is_final": False}
    assert msg.error("boom") == {"type": "error", "message": "boom"}
    assert msg.memory_snapshot(MemorySnapshot(user_name="Umer"))["memory"]["user_name"] == "Umer"

"""
test_integration.py
-------------------
End-to-end tests: start the real websockets server on a free port and drive
it with websockets clients. Covers the full lock / fan-out / unlock flow,
reconnect with a session id and robustness against malformed frames.
"""

import asyncio
import json
import os
import socket
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, ROOT)

websockets = pytest.importorskip("websockets")

import cipher
import server
from dispatcher import ChatServer


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_config() -> server.ServerConfig:
    return server.ServerConfig(host="127.0.0.1", port=find_free_port(), ping_interval=None, ping_timeout=None)


async def recv_json(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def expect_silence(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


@pytest.mark.asyncio
async def test_lock_fanout_and_unlock_end_to_end():
    cfg = make_config()
    chat = ChatServer()
    url = f"ws://{cfg.host}:{cfg.port}/ws"
    async with server.build_server(chat, cfg):
        async with websockets.connect(url) as alice, websockets.connect(url) as bob:
            await alice.send(json.dumps({"type": "set_password", "userId": "u1", "password": "12345", "userColor": "red"}))
            await bob.send(json.dumps({"type": "set_password", "userId": "u2", "password": "777"}))
            await asyncio.sleep(0.1)

            await alice.send(json.dumps({"type": "send_message", "userId": "u1", "userName": "alice",
                                         "userColor": "red", "content": "Hello"}))
            got_a, got_b = await recv_json(alice), await recv_json(bob)
            assert got_a == got_b
            assert got_a["type"] == "message"
            assert got_a["encryptedContent"] == cipher.encrypt("Hello", "12345") != "Hello"
            assert got_a["userColor"] == "red"
            mid = got_a["id"]

            await bob.send(json.dumps({"type": "attempt_unlock", "requesterId": "u2", "messageId": mid, "guess": "99999"}))
            env = await recv_json(bob)
            assert env["type"] == "internal_delivery" and env["requesterId"] == "u2"
            wrong = json.loads(env["payload"])
            assert wrong["success"] is False and wrong["error"] == "wrong password"
            assert wrong["decryptedContent"] != "Hello"

            await bob.send(json.dumps({"type": "attempt_unlock", "requesterId": "u2", "messageId": mid, "guess": "12345"}))
            right = json.loads((await recv_json(bob))["payload"])
            assert right == {"type": "unlock_result", "messageId": mid, "success": True,
                             "decryptedContent": "Hello", "ownerName": "alice"}

            await bob.send(json.dumps({"type": "attempt_unlock", "requesterId": "u2", "messageId": "nope", "guess": "1"}))
            missing = json.loads((await recv_json(bob))["payload"])
            assert missing["success"] is False and missing["error"] == "message not found"

            # private replies never reached alice
            await expect_silence(alice)


@pytest.mark.asyncio
async def test_malformed_frames_keep_connection_open():
    cfg = make_config()
    chat = ChatServer()
    url = f"ws://{cfg.host}:{cfg.port}/ws"
    async with server.build_server(chat, cfg):
        async with websockets.connect(url) as ws:
            await ws.send("this is not json")
            await ws.send(json.dumps({"type": "ping"}))
            await ws.send(json.dumps({"type": "send_message", "userId": "u9"}))  # missing fields
            await ws.send(json.dumps({"type": "send_message", "userId": "u9", "userName": "n",
                                      "userColor": "c", "content": "x"}))
            err = await recv_json(ws)
            assert err == {"type": "error", "message": "Password not set for user"}
            assert len(chat.messages) == 0


@pytest.mark.asyncio
async def test_reconnect_with_session_restores_binding():
    cfg = make_config()
    chat = ChatServer()
    base = f"ws://{cfg.host}:{cfg.port}/ws"
    async with server.build_server(chat, cfg):
        async with websockets.connect(base) as bob:
            await bob.send(json.dumps({"type": "set_password", "userId": "u2", "password": "2"}))

            async with websockets.connect(f"{base}?session=alice-tab") as alice:
                await alice.send(json.dumps({"type": "set_password", "userId": "u1", "password": "1"}))
                await asyncio.sleep(0.1)
            await asyncio.sleep(0.1)
            assert chat.registry.resolve_connection("u1") is None

            await bob.send(json.dumps({"type": "send_message", "userId": "u2", "userName": "bob",
                                       "userColor": "blue", "content": "missed you"}))
            first = await recv_json(bob)

            async with websockets.connect(f"{base}?session=alice-tab") as alice:
                await asyncio.sleep(0.1)
                assert chat.registry.resolve_connection("u1") == "alice-tab"
                await expect_silence(alice)  # no push on raw connect

                await bob.send(json.dumps({"type": "send_message", "userId": "u2", "userName": "bob",
                                           "userColor": "blue", "content": "hi again"}))
                caught_up = [await recv_json(alice), await recv_json(alice)]
                assert caught_up[0]["id"] == first["id"]
                assert cipher.decrypt(caught_up[1]["encryptedContent"], "2") == "hi again"

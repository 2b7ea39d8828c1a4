import asyncio
import json
import os

import websockets

# Manual smoke test against a running server.
# CHAT_CLIENT_KEY / CHAT_TOKEN / CHAT_ROOM must point at real data.
BASE = os.environ.get("CHAT_WS_URL", "ws://localhost:8000/api/ws")
CLIENT_KEY = os.environ.get("CHAT_CLIENT_KEY", "dev-client-key")
TOKEN = os.environ.get("CHAT_TOKEN", "dev-token")
ROOM = os.environ.get("CHAT_ROOM", "")


async def smoke():
    async with websockets.connect(f"{BASE}?client_key={CLIENT_KEY}&token={TOKEN}") as ws:
        # first frame is our own connect event
        connect = json.loads(await ws.recv())
        print(f"Connected as: {connect['userId']}")

        await ws.send(json.dumps({
            "type": "message",
            "chatroomId": ROOM,
            "payload": {"message": "Hello from Python!"},
        }))

        # echo of our message, or an error event
        msg = await ws.recv()
        print(f"Received: {msg}")


asyncio.run(smoke())

"""Shared fixtures: an in-memory registry server behind the Transport protocol."""

import asyncio
import json

import pytest

from servicecenter_client.config import ClientConfig
from servicecenter_client.errors import ServiceCenterAuthError, ServiceCenterConnectionError

_END = object()


class FakeChannel:
    """One stream between the client and FakeServer."""

    def __init__(self, server, endpoint):
        self.server = server
        self.endpoint = endpoint
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data):
        if self.closed:
            raise ConnectionError("channel closed")
        message = json.loads(data)
        self.sent.append(message)
        self.server.handle(self, message)

    def push(self, msg_type, payload=None, rid=None):
        frame = {"t": msg_type, "p": payload or {}}
        if rid is not None:
            frame["rid"] = rid
        self._inbox.put_nowait(json.dumps(frame))

    def push_raw(self, frame):
        self._inbox.put_nowait(frame)

    def drop(self, exc=None):
        """End the stream, cleanly or with *exc*."""
        self._inbox.put_nowait(_END if exc is None else exc)

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        while True:
            item = await self._inbox.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_END)

    def sent_types(self):
        return [m["t"] for m in self.sent]


class FakeServer:
    """Transport that answers like a registry server.

    Attributes:
        down: Endpoint addresses that refuse connections.
        auth_error: Refuse every open with an auth error.
        answer_pings: Reply to ``ping`` with ``pong``.
        silent: Message types that never get a response.
        rejector: ``callable(message) -> (code, text) | None``.
        results: Extra response fields per message type.
    """

    def __init__(self):
        self.channels: list[FakeChannel] = []
        self.opened: list[str] = []
        self.down: set[str] = set()
        self.auth_error = False
        self.answer_pings = True
        self.silent: set[str] = set()
        self.rejector = None
        self.results: dict[str, dict] = {}

    async def open(self, endpoint, options):
        self.opened.append(endpoint.address)
        if self.auth_error:
            raise ServiceCenterAuthError("bad credentials")
        if endpoint.address in self.down or "*" in self.down:
            raise ServiceCenterConnectionError(f"{endpoint} refused")
        channel = FakeChannel(self, endpoint)
        self.channels.append(channel)
        return channel

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    def handle(self, channel, message):
        msg_type = message["t"]
        if msg_type == "ping":
            if self.answer_pings:
                channel.push("pong", {"timestamp": message["p"]["timestamp"]})
            return
        if msg_type in self.silent:
            return
        if self.rejector is not None:
            rejection = self.rejector(message)
            if rejection is not None:
                code, text = rejection
                channel.push(
                    "response",
                    {"success": False, "code": code, "message": text},
                    rid=message["id"],
                )
                return
        if msg_type == "handshake":
            channel.push(
                "handshake_ack",
                {"success": True, "connection_id": f"conn-{len(self.channels)}"},
                rid=message["id"],
            )
            return
        result = {"success": True}
        if msg_type in ("register_node", "register_service") and "node" in message["p"]:
            node = message["p"]["node"]
            result["node_id"] = node.get("node_id") or f"node-{node['port']}"
        result.update(self.results.get(msg_type, {}))
        channel.push("response", result, rid=message["id"])


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.002)


async def settle():
    """Let queued writes, responses and callbacks run."""
    for _ in range(5):
        await asyncio.sleep(0.005)


def snapshot(service_name, nodes, namespace_id="public", group_name="DEFAULT_GROUP"):
    return {
        "service": {
            "namespace_id": namespace_id,
            "group_name": group_name,
            "service_name": service_name,
            "nodes": [
                {"ip": ip, "port": port, "metadata": meta or {}} for ip, port, meta in nodes
            ],
        }
    }


def config_push(config_data_id, content, md5=None, **extra):
    payload = {
        "config": {
            "namespace_id": "public",
            "group_name": "DEFAULT_GROUP",
            "config_data_id": config_data_id,
            "content": content,
        }
    }
    if md5 is not None:
        payload["config"]["content_md5"] = md5
    payload.update(extra)
    return payload


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def config():
    return ClientConfig(
        server_address="a:1001,b:1002",
        heartbeat_interval=0.05,
        reconnect_interval=0.01,
        request_timeout=0.5,
        max_reconnect_attempts=3,
    )

"""End-to-end tests for AsyncServiceCenterClient against FakeServer."""

import asyncio
import dataclasses

import pytest
from conftest import config_push, settle, snapshot, wait_until

from servicecenter_client import AsyncServiceCenterClient
from servicecenter_client.errors import (
    ClientClosedError,
    ReconnectExhaustedError,
    ServiceCenterRequestError,
)
from servicecenter_client.listener import ConfigChangeListener, ServiceChangeListener
from servicecenter_client.types import (
    ConfigEventType,
    ConfigVersion,
    ConnectionState,
    NodeInfo,
    ServiceEventType,
    SubscriptionKind,
)


class Recorder(ServiceChangeListener):
    def __init__(self):
        self.events = []
        self.lifecycle = []

    def on_service_change(self, event):
        self.events.append(event)

    def on_disconnected(self, cause):
        self.lifecycle.append(("disconnected", cause))

    def on_reconnected(self):
        self.lifecycle.append(("reconnected", None))

    @property
    def types(self):
        return [e.event_type for e in self.events]


class ConfigRecorder(ConfigChangeListener):
    def __init__(self):
        self.events = []

    def on_config_change(self, event):
        self.events.append(event)


def _subscribe_messages(channel):
    return [
        (m["t"], m["p"].get("service_name") or m["p"].get("config_data_id"))
        for m in channel.sent
        if m["t"] in ("subscribe_service", "watch_config", "register_node")
    ]


async def _connected_client(config, server):
    client = AsyncServiceCenterClient(config, transport=server)
    assert await client.connect() is True
    return client


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_subscribe_before_connect(self, config, server):
        client = AsyncServiceCenterClient(config, transport=server)
        ack = await client.subscribe_service("orders", Recorder())
        assert not ack.done()
        await client.connect()
        await asyncio.wait_for(ack, 1)
        assert _subscribe_messages(server.channel) == [("subscribe_service", "orders")]
        await client.close()

    @pytest.mark.asyncio
    async def test_snapshots_become_events(self, config, server):
        client = await _connected_client(config, server)
        listener = Recorder()
        await asyncio.wait_for(await client.subscribe_service("orders", listener), 1)

        server.channel.push("service_snapshot", snapshot("orders", [("10.0.0.1", 1, None), ("10.0.0.2", 2, None)]))
        await wait_until(lambda: len(listener.events) == 3)
        assert listener.types == [
            ServiceEventType.NODE_ADDED,
            ServiceEventType.NODE_ADDED,
            ServiceEventType.SERVICE_ADDED,
        ]

        listener.events.clear()
        server.channel.push(
            "service_snapshot",
            snapshot("orders", [("10.0.0.2", 2, {"zone": "b"}), ("10.0.0.3", 3, None)]),
        )
        await wait_until(lambda: len(listener.events) == 4)
        assert listener.types == [
            ServiceEventType.NODE_REMOVED,
            ServiceEventType.NODE_UPDATED,
            ServiceEventType.NODE_ADDED,
            ServiceEventType.SERVICE_UPDATED,
        ]
        assert listener.events[0].changed_node.ip_address == "10.0.0.1"
        assert listener.events[1].changed_node.metadata == {"zone": "b"}

        listener.events.clear()
        server.channel.push(
            "service_snapshot",
            snapshot("orders", [("10.0.0.3", 3, None), ("10.0.0.2", 2, {"zone": "b"})]),
        )
        await settle()
        assert listener.events == []
        await client.close()

    @pytest.mark.asyncio
    async def test_other_scope_not_delivered(self, config, server):
        client = await _connected_client(config, server)
        listener = Recorder()
        await client.subscribe_service("orders", listener)
        server.channel.push(
            "service_snapshot", snapshot("orders", [("h", 1, None)], group_name="CANARY")
        )
        server.channel.push("service_snapshot", snapshot("billing", [("h", 1, None)]))
        await settle()
        assert listener.events == []
        await client.close()

    @pytest.mark.asyncio
    async def test_plain_callable_listener(self, config, server):
        client = await _connected_client(config, server)
        seen = []
        await client.subscribe_service("orders", seen.append)
        server.channel.push("service_snapshot", snapshot("orders", [("h", 1, None)]))
        await wait_until(lambda: len(seen) == 2)
        await client.close()

    @pytest.mark.asyncio
    async def test_rejected_subscribe_fails_ack(self, config, server):
        server.rejector = (
            lambda m: ("NOT_FOUND", "no namespace") if m["t"] == "subscribe_service" else None
        )
        client = await _connected_client(config, server)
        listener = Recorder()
        ack = await client.subscribe_service("orders", listener)
        with pytest.raises(ServiceCenterRequestError):
            await asyncio.wait_for(ack, 1)
        assert listener.lifecycle == []
        await client.close()

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_listener(self, config, server):
        client = await _connected_client(config, server)
        first, second = Recorder(), Recorder()
        await client.subscribe_service("orders", first)
        server.channel.push("service_snapshot", snapshot("orders", [("h", 1, None)]))
        await wait_until(lambda: len(first.events) == 2)

        await client.subscribe_service("orders", second)
        server.channel.push("service_snapshot", snapshot("orders", [("h", 1, None)]))
        await wait_until(lambda: len(second.events) == 2)
        assert len(first.events) == 2
        assert len(client.subscriptions) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, config, server):
        client = AsyncServiceCenterClient(config, transport=server)
        with pytest.raises(ValueError):
            await client.subscribe_service("", Recorder())
        with pytest.raises(ValueError):
            await client.subscribe_service("orders", None)
        await client.close()


class TestUnsubscribe:
    @pytest.mark.asyncio
    async def test_stops_delivery(self, config, server):
        client = await _connected_client(config, server)
        listener = Recorder()
        await client.subscribe_service("orders", listener)
        server.channel.push("service_snapshot", snapshot("orders", [("h", 1, None)]))
        await wait_until(lambda: len(listener.events) == 2)

        await asyncio.wait_for(await client.unsubscribe_service("orders"), 1)
        assert "unsubscribe_service" in server.channel.sent_types()
        server.channel.push("service_snapshot", snapshot("orders", [("h", 2, None)]))
        await settle()
        assert len(listener.events) == 2
        assert client.subscriptions == []
        await client.close()

    @pytest.mark.asyncio
    async def test_unknown_key_resolves_immediately(self, config, server):
        client = await _connected_client(config, server)
        done = await client.unwatch_config("missing.yaml")
        assert done.done()
        assert "unwatch_config" not in server.channel.sent_types()
        await client.close()


class TestConfigWatch:
    @pytest.mark.asyncio
    async def test_dedup_by_md5(self, config, server):
        client = await _connected_client(config, server)
        listener = ConfigRecorder()
        await asyncio.wait_for(await client.watch_config("db.yaml", listener), 1)

        server.channel.push("config_push", config_push("db.yaml", "v1", md5="abc"))
        server.channel.push("config_push", config_push("db.yaml", "v1", md5="abc"))
        server.channel.push("config_push", config_push("db.yaml", "v2", md5="def"))
        await wait_until(lambda: len(listener.events) == 2)
        await settle()
        assert [e.config.content for e in listener.events] == ["v1", "v2"]
        assert listener.events[1].content_md5 == "def"

        server.channel.push("config_deleted", {"config_data_id": "db.yaml"})
        await wait_until(lambda: len(listener.events) == 3)
        assert listener.events[-1].event_type == ConfigEventType.CONFIG_DELETED
        await client.close()

    @pytest.mark.asyncio
    async def test_deleted_flag_on_push(self, config, server):
        client = await _connected_client(config, server)
        listener = ConfigRecorder()
        await client.watch_config("db.yaml", listener)
        server.channel.push("config_push", config_push("db.yaml", "", deleted=True))
        await wait_until(lambda: listener.events)
        assert listener.events[0].event_type == ConfigEventType.CONFIG_DELETED
        await client.close()

    @pytest.mark.asyncio
    async def test_service_and_config_keys_are_separate(self, config, server):
        client = await _connected_client(config, server)
        await client.subscribe_service("shared", Recorder())
        await client.watch_config("shared", ConfigRecorder())
        assert [k.kind for k in client.subscriptions] == [
            SubscriptionKind.SERVICE,
            SubscriptionKind.CONFIG,
        ]
        await client.close()


class TestReconnectReplay:
    @pytest.mark.asyncio
    async def test_replays_in_registration_order_once(self, config, server):
        client = await _connected_client(config, server)
        await client.subscribe_service("a", Recorder())
        await client.watch_config("b.yaml", ConfigRecorder())
        await client.subscribe_service("c", Recorder())
        await settle()

        server.channel.drop()
        await wait_until(lambda: len(server.channels) == 2 and client.is_connected)
        await settle()
        assert _subscribe_messages(server.channel) == [
            ("subscribe_service", "a"),
            ("watch_config", "b.yaml"),
            ("subscribe_service", "c"),
        ]
        await client.close()

    @pytest.mark.asyncio
    async def test_lifecycle_hooks(self, config, server):
        client = await _connected_client(config, server)
        listener = Recorder()
        await client.subscribe_service("orders", listener)
        server.channel.drop()
        await wait_until(lambda: len(listener.lifecycle) == 2)
        assert [name for name, _ in listener.lifecycle] == ["disconnected", "reconnected"]
        await client.close()

    @pytest.mark.asyncio
    async def test_state_survives_reconnect(self, config, server):
        client = await _connected_client(config, server)
        listener = Recorder()
        await client.subscribe_service("orders", listener)
        server.channel.push("service_snapshot", snapshot("orders", [("h", 1, None)]))
        await wait_until(lambda: len(listener.events) == 2)

        server.channel.drop()
        await wait_until(lambda: len(server.channels) == 2 and client.is_connected)
        server.channel.push("service_snapshot", snapshot("orders", [("h", 1, None)]))
        await settle()
        assert len(listener.events) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_rejected_replay_notifies_only_that_key(self, config, server):
        client = await _connected_client(config, server)
        good, bad = Recorder(), Recorder()
        await client.subscribe_service("good", good)
        await client.subscribe_service("bad", bad)
        await settle()

        server.rejector = lambda m: (
            ("FORBIDDEN_SERVICE", "gone")
            if m["t"] == "subscribe_service" and m["p"]["service_name"] == "bad"
            else None
        )
        server.channel.drop()
        await wait_until(lambda: len(bad.lifecycle) == 3)
        await settle()

        assert [name for name, _ in good.lifecycle] == ["disconnected", "reconnected"]
        assert [name for name, _ in bad.lifecycle] == [
            "disconnected",
            "reconnected",
            "disconnected",
        ]
        assert isinstance(bad.lifecycle[-1][1], ServiceCenterRequestError)
        assert client.is_connected
        await client.close()

    @pytest.mark.asyncio
    async def test_exhaustion_fails_acks(self, config, server):
        server.down.add("*")
        client = AsyncServiceCenterClient(config, transport=server)
        listener = Recorder()
        ack = await client.subscribe_service("orders", listener)
        assert await client.connect() is False
        with pytest.raises(ReconnectExhaustedError):
            await asyncio.wait_for(ack, 2)
        assert client.state == ConnectionState.CLOSED
        assert isinstance(listener.lifecycle[-1][1], ReconnectExhaustedError)
        with pytest.raises(ClientClosedError):
            await client.subscribe_service("billing", Recorder())
        await client.close()


class TestNodeRegistration:
    @pytest.mark.asyncio
    async def test_register_merges_metadata(self, config, server):
        cfg = dataclasses.replace(config, metadata={"zone": "a", "env": "prod"})
        client = await _connected_client(cfg, server)
        node_id = await client.register_node("billing", "10.0.1.7", 8080, metadata={"zone": "b"})
        assert node_id == "node-8080"
        assert client.registered_nodes == ["node-8080"]
        request = next(m for m in server.channel.sent if m["t"] == "register_node")
        assert request["p"]["service_name"] == "billing"
        assert request["p"]["node"]["metadata"] == {"zone": "b", "env": "prod"}
        await client.close()

    @pytest.mark.asyncio
    async def test_reregistered_before_replay(self, config, server):
        client = await _connected_client(config, server)
        await client.subscribe_service("orders", Recorder())
        node_id = await client.register_node("billing", "10.0.1.7", 8080)
        server.channel.drop()
        await wait_until(lambda: len(server.channels) == 2 and client.is_connected)
        await settle()

        assert _subscribe_messages(server.channel) == [
            ("register_node", "billing"),
            ("subscribe_service", "orders"),
        ]
        replayed = next(m for m in server.channel.sent if m["t"] == "register_node")
        assert replayed["p"]["node"]["node_id"] == node_id
        await client.close()

    @pytest.mark.asyncio
    async def test_heartbeat_lists_nodes(self, config, server):
        client = await _connected_client(config, server)
        node_id = await client.register_node("billing", "10.0.1.7", 8080)
        await wait_until(
            lambda: any(
                m["t"] == "ping" and m["p"].get("node_ids") == [node_id]
                for m in server.channel.sent
            )
        )
        await client.close()

    @pytest.mark.asyncio
    async def test_deregister(self, config, server):
        client = await _connected_client(config, server)
        node_id = await client.register_node("billing", "10.0.1.7", 8080)
        assert await client.deregister_node(node_id) is True
        assert await client.deregister_node(node_id) is False
        request = next(m for m in server.channel.sent if m["t"] == "deregister_node")
        assert request["p"]["node_id"] == node_id
        assert client.registered_nodes == []
        await client.close()


    @pytest.mark.asyncio
    async def test_register_service_with_node_is_tracked(self, config, server):
        client = await _connected_client(config, server)
        node_id = await client.register_service(
            "billing", metadata={"owner": "team-b"}, node=NodeInfo("10.0.1.7", 9090)
        )
        assert node_id == "node-9090"
        assert client.registered_nodes == [node_id]
        request = next(m for m in server.channel.sent if m["t"] == "register_service")
        assert request["p"]["metadata"] == {"owner": "team-b"}
        assert request["p"]["node"]["port"] == 9090

        server.channel.drop()
        await wait_until(lambda: len(server.channels) == 2 and client.is_connected)
        await settle()
        replayed = next(m for m in server.channel.sent if m["t"] == "register_node")
        assert replayed["p"]["service_name"] == "billing"
        assert replayed["p"]["node"]["node_id"] == node_id
        await client.close()

    @pytest.mark.asyncio
    async def test_register_service_without_node(self, config, server):
        client = await _connected_client(config, server)
        assert await client.register_service("billing") is None
        assert client.registered_nodes == []
        await client.close()

    @pytest.mark.asyncio
    async def test_unregister_service_node(self, config, server):
        client = await _connected_client(config, server)
        node_id = await client.register_service("billing", node=NodeInfo("10.0.1.7", 9090))
        await client.unregister_service("billing", node_id=node_id)
        assert client.registered_nodes == []
        request = next(m for m in server.channel.sent if m["t"] == "unregister_service")
        assert request["p"] == {
            "namespace_id": "public",
            "group_name": "DEFAULT_GROUP",
            "service_name": "billing",
            "node_id": node_id,
        }
        await client.close()


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_service(self, config, server):
        server.results["get_service"] = snapshot("orders", [("h", 1, {"v": "2"})])
        client = await _connected_client(config, server)
        service = await client.get_service("orders")
        assert service.service_name == "orders"
        assert [(n.ip_address, n.port_number) for n in service.nodes] == [("h", 1)]
        assert client.subscriptions == []
        await client.close()

    @pytest.mark.asyncio
    async def test_get_config(self, config, server):
        server.results["get_config"] = config_push("db.yaml", "url: x", md5="abc")
        client = await _connected_client(config, server)
        item = await client.get_config("db.yaml")
        assert item.content == "url: x"
        assert item.content_md5 == "abc"
        await client.close()

    @pytest.mark.asyncio
    async def test_discover_nodes(self, config, server):
        server.results["discover_nodes"] = {"nodes": [{"ip": "h", "port": 1, "healthy": True}]}
        client = await _connected_client(config, server)
        nodes = await client.discover_nodes("orders")
        assert [n.identity for n in nodes] == [("h", 1)]
        request = next(m for m in server.channel.sent if m["t"] == "discover_nodes")
        assert request["p"]["healthy_only"] is True
        assert await client.discover_nodes("orders", healthy_only=False) == nodes
        await client.close()

    @pytest.mark.asyncio
    async def test_save_config(self, config, server):
        server.results["save_config"] = {"version": 4, "content_md5": "d41d"}
        client = await _connected_client(config, server)
        result = await client.save_config("db.yaml", "url: y", content_type="yaml")
        assert result == ConfigVersion(4, "d41d")
        request = next(m for m in server.channel.sent if m["t"] == "save_config")
        assert request["p"]["config_data_id"] == "db.yaml"
        assert request["p"]["content"] == "url: y"
        assert request["p"]["content_type"] == "yaml"
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_config_rejected(self, config, server):
        server.rejector = lambda m: ("NOT_FOUND", "no such config") if m["t"] == "delete_config" else None
        client = await _connected_client(config, server)
        with pytest.raises(ServiceCenterRequestError) as excinfo:
            await client.delete_config("db.yaml")
        assert excinfo.value.code == "NOT_FOUND"
        await client.close()

    @pytest.mark.asyncio
    async def test_list_configs(self, config, server):
        server.results["list_configs"] = {
            "configs": [
                {"config_data_id": "a.yaml", "content": "x"},
                {"config_data_id": "b.yaml", "content": "y", "version": 2},
            ]
        }
        client = await _connected_client(config, server)
        items = await client.list_configs(search_key="yaml", page_size=10)
        assert [c.config_data_id for c in items] == ["a.yaml", "b.yaml"]
        assert items[0].namespace_id == "public"
        assert items[1].version == 2
        request = next(m for m in server.channel.sent if m["t"] == "list_configs")
        assert request["p"]["search_key"] == "yaml"
        assert request["p"]["page_num"] == 1
        assert request["p"]["page_size"] == 10
        await client.close()

    @pytest.mark.asyncio
    async def test_config_history_and_rollback(self, config, server):
        server.results["get_config_history"] = {
            "history": [
                {"config_history_id": 9, "version": 3, "change_type": "UPDATE", "changed_by": "ops"},
                {"config_history_id": 8, "version": 2, "change_type": "CREATE"},
            ]
        }
        server.results["rollback_config"] = {"new_version": 4, "content_md5": "abc"}
        client = await _connected_client(config, server)

        history = await client.get_config_history("db.yaml", limit=2)
        assert [h.version for h in history] == [3, 2]
        assert history[0].changed_by == "ops"
        assert history[0].config_data_id == "db.yaml"

        result = await client.rollback_config("db.yaml", 2)
        assert result == ConfigVersion(4, "abc")
        request = next(m for m in server.channel.sent if m["t"] == "rollback_config")
        assert request["p"]["target_version"] == 2
        assert request["p"]["changed_by"] == "system"
        assert request["p"]["change_reason"] == "rollback"
        await client.close()

    @pytest.mark.asyncio
    async def test_get_missing_config(self, config, server):
        client = await _connected_client(config, server)
        assert await client.get_config("missing.yaml") is None
        await client.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_listener_errors_are_isolated(self, config, server):
        class Broken(ServiceChangeListener):
            def on_service_change(self, event):
                raise RuntimeError("listener bug")

        client = await _connected_client(config, server)
        healthy = Recorder()
        await client.subscribe_service("a", Broken())
        await client.subscribe_service("b", healthy)
        server.channel.push("service_snapshot", snapshot("a", [("h", 1, None)]))
        server.channel.push("service_snapshot", snapshot("b", [("h", 1, None)]))
        await wait_until(lambda: len(healthy.events) == 2)
        assert client.is_connected
        await client.close()

    @pytest.mark.asyncio
    async def test_close(self, config, server):
        states = []
        client = AsyncServiceCenterClient(config, transport=server, on_state_change=states.append)
        await client.connect()
        await client.subscribe_service("orders", Recorder())
        await client.close()
        await client.close()

        assert states[-1] == ConnectionState.CLOSED
        assert client.subscriptions == []
        assert server.channel.closed
        with pytest.raises(ClientClosedError):
            await client.subscribe_service("orders", Recorder())
        with pytest.raises(ClientClosedError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_context_manager_and_stats(self, config, server):
        async with AsyncServiceCenterClient(config, transport=server) as client:
            await client.subscribe_service("orders", Recorder())
            stats = client.get_stats()
            assert stats["state"] == "connected"
            assert stats["endpoint"] == "a:1001"
            assert stats["connection_id"] == "conn-1"
            assert stats["subscriptions"] == 1
            assert len(stats["address_pool"]) == 2
        assert client.state == ConnectionState.CLOSED

"""Tests for the collection server and the agent connection state machine."""

from __future__ import annotations

import logging
import socket
import threading
import time

import pytest

from sockmap.agent.client import Agent
from sockmap.errors import (
    AgentStateError,
    AgentTimeout,
    DiagnosticKind,
    UnknownAgentError,
)
from sockmap.inventory.models import (
    CaptureSnapshot,
    Endpoint,
    HostInventory,
    InterfaceRecord,
    Protocol,
    SocketRecord,
    SocketState,
)
from sockmap.inventory.store import InventoryStore
from sockmap.protocol.messages import (
    CaptureMode,
    CaptureRequest,
    Exit,
    Register,
    SnapshotMessage,
    read_message,
    write_message,
)
from sockmap.protocol.server import TRANSITIONS, AgentState, CollectionServer


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _inventory(host: str, *ports: int) -> HostInventory:
    return HostInventory(
        host,
        interfaces=frozenset({InterfaceRecord("10.0.0.13")}),
        sockets=frozenset(
            SocketRecord(
                Protocol.TCP,
                Endpoint("10.0.0.13", port),
                SocketState.ESTABLISHED,
                foreign=Endpoint("10.0.0.11", 22),
                pid=port,
                process_name="ssh",
            )
            for port in ports
        ),
    )


class FakeCollector:
    """Every collection returns one new established socket."""

    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def collect(self, hostname: str) -> HostInventory:
        with self._lock:
            self.calls += 1
            return _inventory(hostname, 40000 + self.calls)


class RawAgent:
    """Agent side driven by hand, for the cases a real agent never produces."""

    def __init__(self, server: CollectionServer, name: str = "centos") -> None:
        self.sock, server_side = socket.socketpair()
        self.sock.settimeout(2.0)
        self.conn = server.serve_connection(server_side, f"peer-{name}")
        write_message(self.sock, Register(name))
        assert _wait_for(lambda: self.conn.state is AgentState.IDLE)

    def snapshot(self, host: str, *ports: int, final: bool = False) -> None:
        write_message(self.sock, SnapshotMessage(CaptureSnapshot(_inventory(host, *ports), final=final)))

    def close(self) -> None:
        self.sock.close()


@pytest.fixture
def server():
    srv = CollectionServer(InventoryStore(), capture_timeout=2.0)
    yield srv
    srv.stop()


@pytest.fixture
def live_agent(server):
    agent_side, server_side = socket.socketpair()
    collector = FakeCollector()
    agent = Agent(("127.0.0.1", 6840), collector, hostname="centos")
    conn = server.serve_connection(server_side, "127.0.0.1:50000")
    agent.connect(sock=agent_side)
    thread = threading.Thread(target=agent.run, daemon=True)
    thread.start()
    assert _wait_for(lambda: conn.state is AgentState.IDLE)
    yield agent, conn
    agent.stop()
    thread.join(timeout=2.0)


def test_disconnected_is_terminal():
    assert TRANSITIONS[AgentState.DISCONNECTED] == frozenset()
    assert AgentState.IDLE in TRANSITIONS[AgentState.CONNECTED]
    assert AgentState.RECORDING not in TRANSITIONS[AgentState.CAPTURING]


class TestWithAgent:
    def test_registration(self, server, live_agent):
        _, conn = live_agent
        assert server.list_active_agents() == {"centos"}
        assert conn.addresses == ["10.0.0.13"]

    def test_single_capture(self, server, live_agent):
        _, conn = live_agent
        inventory = server.trigger_capture("centos")
        assert inventory.name == "centos"
        assert len(inventory.sockets) == 1
        assert server.store.get("centos") == inventory
        assert conn.state is AgentState.IDLE

    def test_recording(self, server, live_agent):
        agent, conn = live_agent
        server.start_recording("centos", 0.1)
        assert conn.state is AgentState.RECORDING
        assert server.store.is_recording("centos")
        assert _wait_for(lambda: conn.snapshots >= 3)

        inventory = server.stop_recording("centos")
        assert conn.state is AgentState.IDLE
        assert not server.store.is_recording("centos")
        assert len(inventory.sockets) == conn.snapshots
        assert _wait_for(lambda: not agent.recording)

    def test_capture_while_recording_rejected(self, server, live_agent):
        server.start_recording("centos", 0.1)
        with pytest.raises(AgentStateError):
            server.trigger_capture("centos")
        with pytest.raises(AgentStateError):
            server.start_recording("centos", 0.1)
        server.stop_recording("centos")

    def test_stop_without_recording_rejected(self, server, live_agent):
        with pytest.raises(AgentStateError):
            server.stop_recording("centos")

    def test_agent_leaves(self, server, live_agent):
        agent, conn = live_agent
        agent.stop()
        assert _wait_for(lambda: conn.state is AgentState.DISCONNECTED)
        assert server.list_active_agents() == set()


class TestMisbehavingAgents:
    def test_unknown_agent(self, server):
        with pytest.raises(UnknownAgentError):
            server.trigger_capture("nope")

    def test_capture_timeout(self, server):
        server.capture_timeout = 0.2
        raw = RawAgent(server)
        with pytest.raises(AgentTimeout):
            server.trigger_capture("centos")

        assert raw.conn.state is AgentState.IDLE
        assert server.list_active_agents() == {"centos"}
        kinds = [d.kind for d in server.diagnostics()]
        assert kinds == [DiagnosticKind.AGENT_TIMEOUT]
        assert read_message(raw.sock) == CaptureRequest(CaptureMode.SINGLE)
        raw.close()

    def test_late_snapshot_discarded(self, server, caplog):
        caplog.set_level(logging.INFO, logger="sockmap.protocol.server")
        server.capture_timeout = 0.2
        raw = RawAgent(server)
        with pytest.raises(AgentTimeout):
            server.trigger_capture("centos")

        raw.snapshot("centos", 5000)
        assert _wait_for(lambda: "Discarding snapshot" in caplog.text)
        assert server.store.get("centos") is None
        assert raw.conn.snapshots == 0
        raw.close()

    def test_snapshot_stored_under_registered_name(self, server):
        raw = RawAgent(server)
        result = {}
        worker = threading.Thread(
            target=lambda: result.setdefault("inventory", server.trigger_capture("centos"))
        )
        worker.start()
        assert read_message(raw.sock) == CaptureRequest(CaptureMode.SINGLE)
        raw.snapshot("localhost.localdomain", 5000)
        worker.join(timeout=2.0)

        assert result["inventory"].name == "centos"
        assert server.store.hosts() == ["centos"]
        raw.close()

    def test_stop_recording_timeout(self, server):
        server.capture_timeout = 0.2
        raw = RawAgent(server)
        server.start_recording("centos", 1.0)
        assert read_message(raw.sock) == CaptureRequest(CaptureMode.START_RECORD, 1.0)
        raw.snapshot("centos", 5000)

        with pytest.raises(AgentTimeout):
            server.stop_recording("centos")
        assert raw.conn.state is AgentState.IDLE
        assert not server.store.is_recording("centos")
        raw.close()

    def test_disconnect_while_recording_keeps_snapshots(self, server):
        raw = RawAgent(server)
        server.start_recording("centos", 1.0)
        raw.snapshot("centos", 5000)
        raw.snapshot("centos", 5001)
        assert _wait_for(lambda: raw.conn.snapshots == 2)
        raw.close()

        assert _wait_for(lambda: raw.conn.state is AgentState.DISCONNECTED)
        assert server.list_active_agents() == set()
        assert not server.store.is_recording("centos")
        assert {s.local.port for s in server.store.get("centos").sockets} == {5000, 5001}

    def test_first_message_must_be_register(self, server):
        agent_side, server_side = socket.socketpair()
        conn = server.serve_connection(server_side, "peer-x")
        write_message(agent_side, SnapshotMessage(CaptureSnapshot(_inventory("x", 1))))

        assert _wait_for(lambda: conn.state is AgentState.DISCONNECTED)
        (diag,) = server.diagnostics()
        assert diag.kind is DiagnosticKind.PROTOCOL_DECODE
        assert diag.source == "peer-x"
        agent_side.close()

    def test_empty_hostname_rejected(self, server):
        agent_side, server_side = socket.socketpair()
        conn = server.serve_connection(server_side, "peer-x")
        write_message(agent_side, Register(""))

        assert _wait_for(lambda: conn.state is AgentState.DISCONNECTED)
        assert server.list_active_agents() == set()
        assert [d.kind for d in server.diagnostics()] == [DiagnosticKind.PROTOCOL_DECODE]
        agent_side.close()

    def test_garbage_frame(self, server):
        raw = RawAgent(server)
        raw.sock.sendall(b"\x00\x00\x00\x03abc")
        assert _wait_for(lambda: raw.conn.state is AgentState.DISCONNECTED)
        assert [d.kind for d in server.diagnostics()] == [DiagnosticKind.PROTOCOL_DECODE]
        raw.close()

    def test_reconnect_replaces_old_connection(self, server):
        old = RawAgent(server)
        new = RawAgent(server)

        assert read_message(old.sock) == Exit()
        assert _wait_for(lambda: old.conn.state is AgentState.DISCONNECTED)
        assert server.registry.get("centos") is new.conn
        old.close()
        new.close()


def test_over_tcp():
    store = InventoryStore()
    with CollectionServer(store, host="127.0.0.1", port=0) as server:
        assert server.is_running
        agent = Agent(server.address, FakeCollector(), hostname="debian")
        agent.connect()
        thread = threading.Thread(target=agent.run, daemon=True)
        thread.start()
        assert _wait_for(lambda: server.list_active_agents() == {"debian"})

        inventory = server.trigger_capture("debian")
        agent.stop()
        thread.join(timeout=2.0)

    assert not server.is_running
    assert inventory.name == "debian"
    assert store.hosts() == ["debian"]

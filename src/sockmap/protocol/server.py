"""Collection server — accepts agents and drives their capture state machines.

Each agent connection is served by its own thread, which owns the socket
reads. Control calls (:meth:`CollectionServer.trigger_capture` and friends)
run on the caller's thread: they move the connection to a new state, send a
CaptureRequest, and wait on the connection's condition variable for the
reader thread to deliver the snapshot.

Agent connection states::

    CONNECTED -> IDLE <-> CAPTURING
                 IDLE <-> RECORDING
    any state -> DISCONNECTED
"""

from __future__ import annotations

import enum
import logging
import socket
import threading
from collections.abc import Callable
from dataclasses import replace

from sockmap.errors import (
    AgentDisconnected,
    AgentStateError,
    AgentTimeout,
    Diagnostic,
    ProtocolDecodeError,
    UnknownAgentError,
)
from sockmap.inventory.models import CaptureSnapshot, HostInventory
from sockmap.inventory.store import InventoryStore
from sockmap.protocol.messages import (
    CaptureMode,
    CaptureRequest,
    Exit,
    Message,
    Register,
    SnapshotMessage,
    read_message,
    write_message,
)

logger = logging.getLogger(__name__)

_ACCEPT_POLL = 0.5


class AgentState(enum.Enum):
    CONNECTED = "connected"
    IDLE = "idle"
    CAPTURING = "capturing"
    RECORDING = "recording"
    DISCONNECTED = "disconnected"


TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.CONNECTED: frozenset({AgentState.IDLE, AgentState.DISCONNECTED}),
    AgentState.IDLE: frozenset(
        {AgentState.CAPTURING, AgentState.RECORDING, AgentState.DISCONNECTED}
    ),
    AgentState.CAPTURING: frozenset({AgentState.IDLE, AgentState.DISCONNECTED}),
    AgentState.RECORDING: frozenset({AgentState.IDLE, AgentState.DISCONNECTED}),
    AgentState.DISCONNECTED: frozenset(),
}


class AgentConnection:
    """Server side of one agent connection."""

    def __init__(
        self,
        sock: socket.socket,
        peer: str,
        store: InventoryStore,
        registry: AgentRegistry,
        report: Callable[[Diagnostic], None] | None = None,
    ) -> None:
        self.sock = sock
        self.peer = peer
        self.hostname = ""
        self.pretty_name = ""
        self.addresses: list[str] = []
        self.snapshots = 0
        self.diagnostics: list[Diagnostic] = []
        self._store = store
        self._registry = registry
        self._report = report
        self._state = AgentState.CONNECTED
        self._cond = threading.Condition()
        self._send_lock = threading.Lock()
        self._final_received = False

    @property
    def name(self) -> str:
        return self.hostname or self.peer

    @property
    def state(self) -> AgentState:
        with self._cond:
            return self._state

    def _transition(self, new: AgentState) -> None:
        with self._cond:
            old = self._state
            if new not in TRANSITIONS[old]:
                raise AgentStateError(
                    self.name, f"cannot go from {old.value} to {new.value}"
                )
            self._state = new
            self._cond.notify_all()
        logger.debug("%s: %s -> %s", self.name, old.value, new.value)

    # -- reader thread ---------------------------------------------------

    def serve(self) -> None:
        """Read messages until the agent leaves or the connection breaks."""
        try:
            first = read_message(self.sock, self.peer)
            if first is None:
                return
            if not isinstance(first, Register):
                raise ProtocolDecodeError(
                    f"expected register, got {first.TYPE}", self.peer
                )
            self._register(first)
            while True:
                message = read_message(self.sock, self.peer)
                if message is None or isinstance(message, Exit):
                    logger.info("Agent %s left", self.name)
                    break
                self._dispatch(message)
        except ProtocolDecodeError as exc:
            self._record(exc.diagnostic())
        except OSError as exc:
            self._record(
                AgentDisconnected(self.name, f"connection lost: {exc}").diagnostic()
            )
        finally:
            self._disconnect()

    def _register(self, message: Register) -> None:
        self.hostname = message.hostname
        self.pretty_name = message.pretty_name
        self.addresses = list(message.addresses)
        replaced = self._registry.add(self)
        if replaced is not None:
            logger.warning("Agent %s reconnected; dropping old connection", self.name)
            replaced.close()
        self._transition(AgentState.IDLE)
        logger.info("Agent %s registered from %s", self.name, self.peer)

    def _dispatch(self, message: Message) -> None:
        if isinstance(message, SnapshotMessage):
            self._on_snapshot(message.snapshot)
        else:
            raise ProtocolDecodeError(
                f"unexpected {message.TYPE} message from agent", self.peer
            )

    def _on_snapshot(self, snapshot: CaptureSnapshot) -> None:
        if snapshot.host != self.hostname:
            snapshot = replace(
                snapshot, inventory=replace(snapshot.inventory, name=self.hostname)
            )
        with self._cond:
            state = self._state
            if state not in (AgentState.CAPTURING, AgentState.RECORDING):
                logger.info(
                    "Discarding snapshot from %s received while %s",
                    self.name,
                    state.value,
                )
                return
            for diag in self._store.add_snapshot(snapshot):
                self._record(diag, log=False)
            self.snapshots += 1
            if state is AgentState.CAPTURING:
                self._transition(AgentState.IDLE)
            elif snapshot.final:
                self._final_received = True
                self._cond.notify_all()
        logger.debug(
            "Snapshot from %s: %d sockets", self.name, len(snapshot.inventory.sockets)
        )

    def _record(self, diag: Diagnostic, log: bool = True) -> None:
        if log:
            logger.warning("%s", diag)
        self.diagnostics.append(diag)
        if self._report is not None:
            self._report(diag)

    def _disconnect(self) -> None:
        with self._cond:
            if self._state is AgentState.DISCONNECTED:
                return
            if self._state is AgentState.RECORDING:
                # Snapshots already committed stay in the store
                self._store.end_recording(self.hostname)
            self._transition(AgentState.DISCONNECTED)
        self._registry.remove(self)
        try:
            self.sock.close()
        except OSError:
            logger.debug("Error closing socket of %s", self.name, exc_info=True)
        logger.info("Agent %s disconnected", self.name)

    # -- control side ----------------------------------------------------

    def send(self, message: Message) -> None:
        try:
            with self._send_lock:
                write_message(self.sock, message)
        except OSError as exc:
            self.close()
            raise AgentDisconnected(self.name, f"send failed: {exc}") from exc

    def trigger_capture(self, timeout: float) -> HostInventory:
        """Single-shot capture. Returns the host's stored inventory."""
        self._transition(AgentState.CAPTURING)
        self.send(CaptureRequest(CaptureMode.SINGLE))
        with self._cond:
            done = self._cond.wait_for(
                lambda: self._state is not AgentState.CAPTURING, timeout
            )
            if self._state is AgentState.DISCONNECTED:
                raise AgentDisconnected(self.name, "disconnected during capture")
            if not done:
                self._transition(AgentState.IDLE)
                raise self._timeout(f"no snapshot within {timeout:g}s")
        return self._store.get(self.hostname) or HostInventory(name=self.hostname)

    def start_recording(self, interval: float) -> None:
        with self._cond:
            if AgentState.RECORDING not in TRANSITIONS[self._state]:
                raise AgentStateError(
                    self.name, f"cannot start recording while {self._state.value}"
                )
            self._store.begin_recording(self.hostname)
            self._final_received = False
            self._transition(AgentState.RECORDING)
        self.send(CaptureRequest(CaptureMode.START_RECORD, interval))

    def stop_recording(self, timeout: float) -> HostInventory:
        """Ask for the final snapshot, close the window, return the merged record."""
        if self.state is not AgentState.RECORDING:
            raise AgentStateError(self.name, "not recording")
        self.send(CaptureRequest(CaptureMode.STOP_RECORD))
        with self._cond:
            done = self._cond.wait_for(
                lambda: self._final_received
                or self._state is AgentState.DISCONNECTED,
                timeout,
            )
            if self._state is AgentState.DISCONNECTED:
                raise AgentDisconnected(self.name, "disconnected while recording")
            inventory = self._store.end_recording(self.hostname)
            self._transition(AgentState.IDLE)
            if not done:
                raise self._timeout(f"no final snapshot within {timeout:g}s")
        return inventory

    def _timeout(self, message: str) -> AgentTimeout:
        exc = AgentTimeout(self.name, message)
        self._record(exc.diagnostic())
        return exc

    def close(self) -> None:
        """Say goodbye and unblock the reader thread."""
        try:
            with self._send_lock:
                write_message(self.sock, Exit())
        except OSError:
            pass
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            logger.debug("Socket of %s already shut down", self.name)


class AgentRegistry:
    """Active agents by host name. Owned by one CollectionServer."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentConnection] = {}
        self._lock = threading.Lock()

    def add(self, conn: AgentConnection) -> AgentConnection | None:
        """Register ``conn``; returns the connection it replaces, if any."""
        with self._lock:
            previous = self._agents.get(conn.name)
            self._agents[conn.name] = conn
        return previous if previous is not conn else None

    def remove(self, conn: AgentConnection) -> None:
        with self._lock:
            if self._agents.get(conn.name) is conn:
                del self._agents[conn.name]

    def get(self, name: str) -> AgentConnection:
        with self._lock:
            conn = self._agents.get(name)
        if conn is None:
            raise UnknownAgentError(name, "no such active agent")
        return conn

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._agents)

    def connections(self) -> list[AgentConnection]:
        with self._lock:
            return [self._agents[name] for name in sorted(self._agents)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)


class CollectionServer:
    """Listens for agents and feeds their snapshots into an InventoryStore."""

    def __init__(
        self,
        store: InventoryStore,
        host: str = "0.0.0.0",
        port: int = 6840,
        capture_timeout: float = 2.0,
    ) -> None:
        self.store = store
        self.host = host
        self.port = port
        self.capture_timeout = capture_timeout
        self.registry = AgentRegistry()
        self._listener: socket.socket | None = None
        self._stop_event = threading.Event()
        self._accept_thread: threading.Thread | None = None
        self._threads: list[threading.Thread] = []
        self._diagnostics: list[Diagnostic] = []
        self._diag_lock = threading.Lock()

    @property
    def address(self) -> tuple[str, int]:
        if self._listener is None:
            return self.host, self.port
        return self._listener.getsockname()[:2]

    @property
    def is_running(self) -> bool:
        return self._accept_thread is not None and self._accept_thread.is_alive()

    def start(self) -> None:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        listener = socket.socket(family, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self.host, self.port))
        listener.listen()
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._stop_event.clear()
        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="sockmap-accept", daemon=True
        )
        self._accept_thread.start()
        logger.info("Collection server listening on %s:%d", *self.address)

    def _accept_loop(self) -> None:
        assert self._listener is not None
        while not self._stop_event.is_set():
            try:
                sock, addr = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if not self._stop_event.is_set():
                    logger.exception("Accept failed; stopping server")
                break
            sock.settimeout(None)
            peer = f"{addr[0]}:{addr[1]}"
            logger.info("Connection from %s", peer)
            self.serve_connection(sock, peer)

    def serve_connection(self, sock: socket.socket, peer: str) -> AgentConnection:
        """Serve an already-connected socket on its own thread."""
        conn = AgentConnection(sock, peer, self.store, self.registry, self._report)
        thread = threading.Thread(
            target=conn.serve, name=f"sockmap-agent-{peer}", daemon=True
        )
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        thread.start()
        return conn

    def stop(self) -> None:
        self._stop_event.set()
        if self._listener is not None:
            self._listener.close()
        for conn in self.registry.connections():
            conn.close()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=2 * _ACCEPT_POLL)
        for thread in self._threads:
            thread.join(timeout=1.0)
        logger.info("Collection server stopped")

    def __enter__(self) -> CollectionServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # -- control plane ---------------------------------------------------

    def list_active_agents(self) -> set[str]:
        return set(self.registry.names())

    def trigger_capture(self, host: str) -> HostInventory:
        return self.registry.get(host).trigger_capture(self.capture_timeout)

    def start_recording(self, host: str, interval: float = 1.0) -> None:
        self.registry.get(host).start_recording(interval)

    def stop_recording(self, host: str) -> HostInventory:
        return self.registry.get(host).stop_recording(self.capture_timeout)

    def _report(self, diag: Diagnostic) -> None:
        with self._diag_lock:
            self._diagnostics.append(diag)

    def diagnostics(self) -> list[Diagnostic]:
        """Every diagnostic reported by any agent connection so far."""
        with self._diag_lock:
            return list(self._diagnostics)

"""Live agent — connects to a collection server and answers capture requests."""

from __future__ import annotations

import logging
import socket
import threading

from sockmap.agent.collector import Collector, default_collector
from sockmap.config import MIN_RECORD_INTERVAL
from sockmap.errors import ProtocolDecodeError
from sockmap.inventory.models import CaptureSnapshot
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


class Agent:
    """One agent process. ``run()`` blocks until the server or ``stop()`` ends it."""

    def __init__(
        self,
        address: tuple[str, int],
        collector: Collector | None = None,
        pretty_name: str = "",
        hostname: str | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.address = address
        self.collector = collector if collector is not None else default_collector()
        self.pretty_name = pretty_name
        self.hostname = hostname or socket.gethostname()
        self.connect_timeout = connect_timeout
        self._sock: socket.socket | None = None
        self._send_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._recorder: threading.Thread | None = None
        self._recorder_stop = threading.Event()
        self._final_wanted = False

    @property
    def recording(self) -> bool:
        return self._recorder is not None and self._recorder.is_alive()

    def snapshot(self, final: bool = False) -> CaptureSnapshot:
        return CaptureSnapshot(self.collector.collect(self.hostname), final=final)

    def connect(self, sock: socket.socket | None = None) -> None:
        """Connect (or adopt ``sock``) and register with the server."""
        if sock is None:
            sock = socket.create_connection(self.address, timeout=self.connect_timeout)
            sock.settimeout(None)
        self._sock = sock
        interfaces = self.collector.collect(self.hostname).interfaces
        self._send(
            Register(
                hostname=self.hostname,
                pretty_name=self.pretty_name,
                addresses=sorted(i.address for i in interfaces),
            )
        )
        logger.info("Registered with %s:%d as %s", *self.address, self.hostname)

    def run(self) -> None:
        """Serve capture requests until the server says goodbye."""
        if self._sock is None:
            self.connect()
        assert self._sock is not None
        try:
            while not self._stop_event.is_set():
                message = read_message(self._sock, f"{self.address[0]}:{self.address[1]}")
                if message is None or isinstance(message, Exit):
                    logger.info("Server closed the session")
                    break
                self._handle(message)
        except ProtocolDecodeError as exc:
            logger.error("Bad message from server: %s", exc)
        except OSError as exc:
            if not self._stop_event.is_set():
                logger.warning("Connection to server lost: %s", exc)
        finally:
            self._stop_recorder(send_final=False)
            self._close()

    def stop(self) -> None:
        """Leave the server and unblock ``run()``."""
        self._stop_event.set()
        self._stop_recorder(send_final=False)
        sock = self._sock
        if sock is not None:
            try:
                self._send(Exit())
            except OSError:
                pass
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                logger.debug("Socket already shut down")

    def _handle(self, message: Message) -> None:
        if not isinstance(message, CaptureRequest):
            raise ProtocolDecodeError(f"unexpected {message.TYPE} message from server")
        if message.mode is CaptureMode.SINGLE:
            logger.info("Single capture requested")
            self._send(SnapshotMessage(self.snapshot()))
        elif message.mode is CaptureMode.START_RECORD:
            self._start_recorder(message.interval)
        elif message.mode is CaptureMode.STOP_RECORD:
            if self.recording:
                self._stop_recorder(send_final=True)
            else:
                # Nothing running; still answer so the server is not left waiting
                self._send(SnapshotMessage(self.snapshot(final=True)))

    def _start_recorder(self, interval: float) -> None:
        if self.recording:
            logger.warning("Recording already running; ignoring start request")
            return
        interval = max(interval, MIN_RECORD_INTERVAL)
        self._recorder_stop.clear()
        self._recorder = threading.Thread(
            target=self._record_loop,
            args=(interval,),
            name="sockmap-recorder",
            daemon=True,
        )
        self._recorder.start()
        logger.info("Recording every %gs", interval)

    def _stop_recorder(self, send_final: bool) -> None:
        recorder = self._recorder
        if recorder is None:
            return
        self._final_wanted = send_final
        self._recorder_stop.set()
        if recorder is not threading.current_thread():
            recorder.join()
        self._recorder = None

    def _record_loop(self, interval: float) -> None:
        try:
            self._send(SnapshotMessage(self.snapshot()))
            while not self._recorder_stop.wait(interval):
                self._send(SnapshotMessage(self.snapshot()))
            if self._final_wanted:
                self._send(SnapshotMessage(self.snapshot(final=True)))
                logger.info("Recording stopped")
        except OSError as exc:
            logger.warning("Recorder could not send snapshot: %s", exc)

    def _send(self, message: Message) -> None:
        if self._sock is None:
            raise OSError("not connected")
        with self._send_lock:
            write_message(self._sock, message)

    def _close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                logger.debug("Error closing socket", exc_info=True)
            self._sock = None

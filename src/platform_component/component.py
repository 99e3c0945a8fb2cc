"""
Platform component lifecycle controller.

Register with the control plane, start (connect to NATS + heartbeat),
stop (drain and close). States:

  UNREGISTERED -> REGISTERED -> CONNECTED -> DRAINING -> CLOSED
                                                      \\-> CLOSING (drain timed out)
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from platform_component import registration
from platform_component.bus import NatsBus
from platform_component.errors import ComponentStateError, DrainTimeoutError
from platform_component.keys import Identity
from platform_component.registration import ConnectResponse, HeartbeatFunction, RegisterOptions
from platform_component.subjects import SubjectSchema

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_S = 2.0
STOP_TIMEOUT_S = 1.0


class ComponentState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    CONNECTED = "connected"
    DRAINING = "draining"
    CLOSED = "closed"
    # drain did not finish within STOP_TIMEOUT_S; the connection may still
    # close later on its own
    CLOSING = "closing"


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    id: str
    data: Optional[str] = None
    msg: str = "ping"

    def to_json(self) -> bytes:
        out = {"msg": self.msg, "id": self.id}
        if self.data is not None:
            out["data"] = self.data
        return json.dumps(out, separators=(",", ":")).encode("utf-8")


class Component:
    """
    A single platform component instance.

    Holds one identity and one bus connection at a time. register() and
    start() block the caller; the heartbeat is the only background work.
    """

    def __init__(self, component_type: str, logger: Optional[logging.Logger] = None) -> None:
        self.subjects = SubjectSchema(component_type)
        self.component_type = component_type
        self.logger = logger or logging.getLogger(__name__).getChild(component_type)

        self._state = ComponentState.UNREGISTERED
        self._identity: Optional[Identity] = None
        self._response: Optional[ConnectResponse] = None
        self._heartbeat_fn: Optional[HeartbeatFunction] = None
        self._bus: Optional[NatsBus] = None

        self._hb_thread: Optional[threading.Thread] = None
        self._hb_stop_event: Optional[threading.Event] = None

    @property
    def state(self) -> ComponentState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def config(self) -> Optional[ConnectResponse]:
        """The decoded control plane response."""
        return self._response

    @property
    def connection(self) -> Optional[NatsBus]:
        """The bus connection; closed by stop()."""
        return self._bus

    def register(
        self,
        token: str,
        *,
        url: Optional[str] = None,
        data: Any = None,
        config: Any = None,
        heartbeat: Optional[HeartbeatFunction] = None,
    ) -> ConnectResponse:
        """
        Register with the control plane and keep the returned credentials.

        data is sent with the request; config receives the component config
        from the reply; heartbeat is called every tick for a status string.
        A fresh identity is generated on every call. Nothing is stored
        unless the whole handshake succeeds.
        """
        if self._state in (ComponentState.CONNECTED, ComponentState.DRAINING):
            raise ComponentStateError(f"cannot register while {self._state.value}; stop first")

        options = RegisterOptions.build(token, url=url, data=data, config=config, heartbeat=heartbeat)
        identity, response = registration.register(options, log=self.logger)

        self._identity = identity
        self._response = response
        self._heartbeat_fn = options.heartbeat
        self._bus = None
        self._state = ComponentState.REGISTERED
        return response

    def start(self, shutdown: Optional[threading.Event] = None) -> None:
        """
        Connect to the bus and start the heartbeat.

        shutdown is an optional parent cancellation signal; the heartbeat
        also stops when it is set.
        """
        if self._state is ComponentState.CONNECTED:
            self.logger.warning("platform component already connected")
            return
        if self._state is not ComponentState.REGISTERED or self._response is None:
            raise ComponentStateError(f"cannot start while {self._state.value}; register first")

        cr = self._response
        self.logger.info("connecting to nats server=%s", cr.server)

        bus = NatsBus(f"platform component {self.component_type}")
        bus.connect(cr.server, user_jwt=cr.jwt, identity=self._identity)

        self.logger.info("connected")
        self._bus = bus
        self._start_heartbeat(shutdown)
        self._state = ComponentState.CONNECTED

    def stop(self) -> None:
        """
        Cancel the heartbeat, drain the connection and wait for it to close.

        Raises DrainTimeoutError if the connection has not closed within
        STOP_TIMEOUT_S; the component is then left CLOSING.
        """
        if self._state is not ComponentState.CONNECTED or self._bus is None:
            raise ComponentStateError(f"cannot stop while {self._state.value}")

        self.logger.info("stopping platform component")
        self._state = ComponentState.DRAINING
        if self._hb_stop_event is not None:
            self._hb_stop_event.set()
        self._hb_thread = None

        closed = threading.Event()
        self._bus.drain(closed.set)

        if not closed.wait(timeout=STOP_TIMEOUT_S):
            self._state = ComponentState.CLOSING
            raise DrainTimeoutError("timeout waiting for nats connection to drain and close")

        self._state = ComponentState.CLOSED
        self.logger.info("platform component stopped")

    # -- heartbeat --------------------------------------------------------

    def _start_heartbeat(self, parent: Optional[threading.Event]) -> None:
        stop = threading.Event()
        self._hb_stop_event = stop
        self._hb_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(stop, parent, self._bus, self._identity.public, self._heartbeat_fn),
            daemon=True,
            name=f"pc-heartbeat-{self.component_type}",
        )
        self._hb_thread.start()

    def _heartbeat_loop(
        self,
        stop: threading.Event,
        parent: Optional[threading.Event],
        bus: NatsBus,
        public: str,
        status_fn: Optional[HeartbeatFunction],
    ) -> None:
        self.logger.info("starting heartbeat")
        subject = self.subjects.heartbeat()
        try:
            while not stop.wait(timeout=HEARTBEAT_INTERVAL_S):
                if parent is not None and parent.is_set():
                    break
                self._beat(bus, subject, public, status_fn)
        finally:
            self.logger.info("heartbeat stopped")

    def _beat(
        self,
        bus: NatsBus,
        subject: str,
        public: str,
        status_fn: Optional[HeartbeatFunction],
    ) -> None:
        status = None
        if status_fn is not None:
            try:
                status = str(status_fn())
            except Exception as exc:
                self.logger.warning("heartbeat status callback failed: %s", exc)
        try:
            bus.publish(subject, HeartbeatPayload(id=public, data=status).to_json())
        except Exception as exc:
            self.logger.warning("heartbeat publish failed: %s", exc)

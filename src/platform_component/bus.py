"""
NATS bus connection: a blocking facade over nats-py.

nats-py is asyncio based; the connection runs its event loop on a private
daemon thread so callers (heartbeat thread, logging handlers, application
code) can use plain synchronous calls.

Calls made from the loop thread itself never wait on the loop, so log records
emitted from NATS callbacks cannot deadlock the process.
"""
from __future__ import annotations

import asyncio
import base64
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Optional

import nats

from platform_component.errors import ConnectError, PlatformComponentError, PublishError
from platform_component.keys import Identity

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 2.0
PUBLISH_TIMEOUT_S = 2.0
DRAIN_TIMEOUT_S = 2.0

MessageHandler = Callable[[str, bytes], None]


class NatsBus:
    """
    Owns one NATS connection and the thread running its event loop.

    Only connect() opens it; only drain() or close() end it.
    """

    def __init__(
        self,
        name: str,
        *,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
        publish_timeout_s: float = PUBLISH_TIMEOUT_S,
        drain_timeout_s: float = DRAIN_TIMEOUT_S,
    ) -> None:
        self.name = name
        self.server: Optional[str] = None
        self.connect_timeout_s = connect_timeout_s
        self.publish_timeout_s = publish_timeout_s
        self.drain_timeout_s = drain_timeout_s

        self._nc: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._loop_thread_id: Optional[int] = None

        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._close_callbacks: list[Callable[[], None]] = []
        self.dropped_publishes = 0

    # -- loop thread ---------------------------------------------------

    def _run_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop_thread_id = threading.get_ident()
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    def _start_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.new_event_loop()
        thread = threading.Thread(
            target=self._run_loop,
            args=(loop,),
            name="nats-loop",
            daemon=True,
        )
        thread.start()
        self._loop = loop
        self._thread = thread
        return loop

    def _stop_loop(self) -> None:
        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return
        if not loop.is_closed():
            try:
                loop.call_soon_threadsafe(loop.stop)
            except RuntimeError:
                pass  # closed concurrently
        if thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _on_loop_thread(self) -> bool:
        return self._loop_thread_id is not None and threading.get_ident() == self._loop_thread_id

    def _submit(self, coro: Any) -> concurrent.futures.Future:
        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            raise PublishError("nats connection closed")
        try:
            return asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError as exc:
            coro.close()
            raise PublishError(f"nats connection closed: {exc}") from exc

    # -- callbacks (run on the loop thread) ----------------------------

    async def _on_closed(self) -> None:
        logger.info("nats connection closed name=%s", self.name)
        with self._lock:
            self._closed.set()
            callbacks, self._close_callbacks = self._close_callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("nats close callback failed")

    async def _on_error(self, exc: Exception) -> None:
        logger.warning("nats error name=%s: %s", self.name, exc)

    async def _on_disconnected(self) -> None:
        logger.info("nats disconnected name=%s", self.name)

    # -- public API -----------------------------------------------------

    def connect(self, server: str, *, user_jwt: str, identity: Identity) -> None:
        """
        Connect to server authenticating with the user JWT and a signature
        of the server nonce made with identity's seed.

        Raises ConnectError; the connection is not retried.
        """
        if self._nc is not None:
            raise ConnectError("nats connection already open")
        if not server:
            raise ConnectError("no broker address to connect to")
        if not identity.can_sign:
            raise ConnectError("identity has no seed to authenticate with")

        def _jwt() -> bytes:
            return user_jwt.encode()

        def _sign(nonce: str) -> bytes:
            return base64.b64encode(identity.sign(nonce.encode()))

        loop = self._start_loop()
        fut = asyncio.run_coroutine_threadsafe(
            nats.connect(
                servers=[server],
                name=self.name,
                user_jwt_cb=_jwt,
                signature_cb=_sign,
                closed_cb=self._on_closed,
                error_cb=self._on_error,
                disconnected_cb=self._on_disconnected,
                allow_reconnect=False,
                connect_timeout=self.connect_timeout_s,
                drain_timeout=self.drain_timeout_s,
            ),
            loop,
        )
        try:
            nc = fut.result(timeout=self.connect_timeout_s + 1.0)
        except Exception as exc:
            fut.cancel()
            self._stop_loop()
            raise ConnectError(f"failed to connect to {server}: {exc}") from exc

        self._nc = nc
        self.server = server
        logger.info("nats connected server=%s name=%s", server, self.name)

    @property
    def is_connected(self) -> bool:
        return bool(self._nc is not None and self._nc.is_connected)

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def _check_open(self) -> Any:
        nc = self._nc
        if nc is None:
            raise PublishError("nats connection not open")
        if self._closed.is_set() or nc.is_closed:
            raise PublishError("nats connection closed")
        return nc

    def publish(self, subject: str, data: bytes) -> None:
        """Publish and wait until nats-py has accepted the message."""
        if self._on_loop_thread():
            self.publish_nowait(subject, data)
            return
        nc = self._check_open()
        fut = self._submit(nc.publish(subject, data))
        try:
            fut.result(timeout=self.publish_timeout_s)
        except concurrent.futures.TimeoutError as exc:
            fut.cancel()
            raise PublishError(f"publish to {subject} timed out") from exc
        except PublishError:
            raise
        except Exception as exc:
            raise PublishError(f"publish to {subject} failed: {exc}") from exc

    def publish_nowait(self, subject: str, data: bytes) -> None:
        """
        Queue a publish on the loop without waiting for it.

        Order is preserved per calling thread. Only synchronous rejections
        (connection not open or closed) raise PublishError; later failures
        are counted in dropped_publishes.
        """
        nc = self._check_open()
        loop = self._loop
        if loop is None or loop.is_closed():
            raise PublishError("nats connection closed")

        def _spawn() -> None:
            task = loop.create_task(nc.publish(subject, data))
            task.add_done_callback(self._publish_done)

        try:
            loop.call_soon_threadsafe(_spawn)
        except RuntimeError as exc:
            raise PublishError(f"nats connection closed: {exc}") from exc

    def _publish_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            # no logging here: log records may be what was being published
            self.dropped_publishes += 1

    def subscribe(self, subject: str, handler: MessageHandler) -> None:
        """Subscribe handler(subject, data); it runs on the loop thread."""
        nc = self._check_open()

        async def _cb(msg: Any) -> None:
            try:
                handler(msg.subject, msg.data)
            except Exception:
                logger.exception("message handler failed subject=%s", msg.subject)

        fut = self._submit(nc.subscribe(subject, cb=_cb))
        try:
            fut.result(timeout=self.publish_timeout_s)
        except Exception as exc:
            raise PlatformComponentError(f"subscribe to {subject} failed: {exc}") from exc

    def drain(self, on_closed: Callable[[], None]) -> None:
        """
        Register a one-shot close callback, then request a graceful drain.

        Does not wait. The loop thread stops once the drain has finished.
        """
        with self._lock:
            already_closed = self._closed.is_set()
            if not already_closed:
                self._close_callbacks.append(on_closed)
        if already_closed:
            on_closed()
            self._stop_loop()
            return

        nc = self._nc
        if nc is None:
            raise PlatformComponentError("nats connection not open")
        self._submit(self._drain(nc))

    async def _drain(self, nc: Any) -> None:
        try:
            await nc.drain()
        except Exception as exc:
            logger.warning("nats drain failed: %s", exc)
            if not nc.is_closed:
                try:
                    await nc.close()
                except Exception as close_exc:
                    logger.warning("nats close failed: %s", close_exc)
        asyncio.get_running_loop().stop()

    def close(self, timeout_s: float = 1.0) -> None:
        """Close immediately without draining. Used on failure paths."""
        nc = self._nc
        if nc is not None and not nc.is_closed and not self._closed.is_set():
            try:
                self._submit(nc.close()).result(timeout=timeout_s)
            except Exception as exc:
                logger.warning("nats close failed: %s", exc)
        self._stop_loop()

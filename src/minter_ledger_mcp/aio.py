"""asyncio facade over :class:`~.ledger.MinterLedger`.

Blocking I/O (discovery, bulk transfers) runs on a single worker thread;
results and lifecycle events are delivered on the caller's event loop.
Cancelling an awaiting coroutine only drops its result. A transfer that
already started on the worker runs to completion or times out, so the
next command always starts on a clean frame boundary.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable

from .errors import LedgerError
from .ledger import MinterLedger
from .models.address import Address
from .models.signature import Signature
from .protocol.commands import TX_HASH_SIZE, Command, encode_derive_index
from .protocol.parser import ExchangeResult
from .transport.session import CODE_NO_CONNECTION, CODE_PERMISSION_DENIED, DeviceListener

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0


class AsyncMinterLedger:
    """Cancellable async commands plus a discovery poll loop.

    Usage::

        ledger = AsyncMinterLedger(MinterLedger.open())
        await ledger.wait_ready(timeout=30)
        version = await ledger.get_version()
        await ledger.destroy()
    """

    def __init__(
        self,
        ledger: MinterLedger,
        poll_interval: float = POLL_INTERVAL,
        worker: Executor | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._ledger = ledger
        self._poll_interval = poll_interval
        self._worker = worker or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="ledger-io"
        )
        self._loop = loop
        self._poll_task: asyncio.Task | None = None
        self._permission_denied = threading.Event()
        self._waiters: set[asyncio.Future] = set()
        self._listener: DeviceListener | None = None
        self._closed = False
        ledger.session.set_device_listener(self)

    @property
    def ledger(self) -> MinterLedger:
        return self._ledger

    @property
    def discovering(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def is_ready(self) -> bool:
        return self._ledger.is_ready()

    def set_device_listener(self, listener: DeviceListener | None) -> None:
        """Register the observer; its callbacks run on the event loop."""
        self._listener = listener

    # ─── WORKER ───────────────────────────────────────────────────────

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    async def _run(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if self._closed:
            raise RuntimeError("Ledger facade is closed")
        loop = self._bind_loop()
        return await loop.run_in_executor(
            self._worker, functools.partial(fn, *args, **kwargs)
        )

    # ─── COMMANDS ─────────────────────────────────────────────────────

    async def exchange(
        self,
        command: Command,
        payload: bytes | None = None,
        timeout: int | None = None,
    ) -> ExchangeResult:
        return await self._run(self._ledger.exchange, command, payload, timeout)

    async def get_version(self) -> str:
        return await self._run(self._ledger.get_version)

    async def get_address(self, derive_index: int = 0, silent: bool = False) -> Address:
        encode_derive_index(derive_index)
        return await self._run(self._ledger.get_address, derive_index, silent)

    async def sign_tx_hash(self, tx_hash: bytes, derive_index: int = 0) -> Signature:
        """Sign a transaction hash. The hash length is checked before queuing."""
        if len(tx_hash) != TX_HASH_SIZE:
            raise ValueError(
                f"Transaction hash must have exact {TX_HASH_SIZE} bytes, got {len(tx_hash)}"
            )
        encode_derive_index(derive_index)
        return await self._run(self._ledger.sign_tx_hash, tx_hash, derive_index)

    # ─── DISCOVERY ────────────────────────────────────────────────────

    def start_discovery(self) -> None:
        """Poll ``search()`` until the device is ready or permission is denied.

        Calling this while a poll loop is already running does nothing.
        """
        if self.discovering:
            return
        self._bind_loop()
        self._permission_denied.clear()
        self._poll_task = self._loop.create_task(self._poll())

    def stop_discovery(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _poll(self) -> None:
        try:
            while not self._poll_done():
                await self._run(self._ledger.session.search)
                if self._poll_done():
                    break
                await asyncio.sleep(self._poll_interval)
            logger.debug("Discovery finished (ready=%s)", self.is_ready())
        except Exception as e:
            logger.error("Discovery failed: %s", e, exc_info=True)
            self._resolve(e)
        finally:
            self._permission_denied.clear()
            if self._poll_task is asyncio.current_task():
                self._poll_task = None

    def _poll_done(self) -> bool:
        return self.is_ready() or self._permission_denied.is_set()

    async def wait_ready(self, timeout: float | None = None) -> AsyncMinterLedger:
        """Start discovery and wait until the device is ready.

        Raises:
            LedgerError: If opening fails, permission is denied, or the
                device disconnects first.
            OSError: If polling for the device fails outright.
            asyncio.TimeoutError: If ``timeout`` seconds pass first.
        """
        loop = self._bind_loop()
        waiter = loop.create_future()
        self._waiters.add(waiter)
        try:
            if self.is_ready():
                return self
            self.start_discovery()
            await asyncio.wait_for(waiter, timeout)
            return self
        finally:
            self._waiters.discard(waiter)

    # ─── TEARDOWN ─────────────────────────────────────────────────────

    async def disconnect(self) -> None:
        self.stop_discovery()
        await self._run(self._ledger.session.disconnect)

    async def destroy(self) -> None:
        """Stop discovery, destroy the session, and shut the worker down."""
        if self._closed:
            return
        self.stop_discovery()
        await self._run(self._ledger.session.destroy)
        self._closed = True
        self._worker.shutdown(wait=False)
        logger.debug("Destroy")

    # ─── LISTENER (called from worker and platform threads) ───────────

    def on_device_ready(self) -> None:
        self._dispatch("on_device_ready")

    def on_disconnected(self) -> None:
        self._dispatch("on_disconnected")

    def on_error(self, code: int, cause: BaseException | None) -> None:
        if code == CODE_PERMISSION_DENIED:
            self._permission_denied.set()
        self._dispatch("on_error", code, cause)

    def _dispatch(self, name: str, *args) -> None:
        loop = self._loop
        if loop is None:
            self._deliver(name, args)
            return
        try:
            loop.call_soon_threadsafe(self._deliver, name, args)
        except RuntimeError:
            logger.debug("Event loop closed, dropping %s", name)

    def _deliver(self, name: str, args: tuple) -> None:
        if name == "on_device_ready":
            self._resolve(None)
        elif name == "on_error":
            code, cause = args
            self._resolve(LedgerError(code, cause))
        elif name == "on_disconnected":
            self.stop_discovery()
            self._resolve(LedgerError(CODE_NO_CONNECTION, ConnectionError("Disconnected")))

        if self._listener is not None:
            getattr(self._listener, name)(*args)

    def _resolve(self, error: BaseException | None) -> None:
        for waiter in list(self._waiters):
            if waiter.done():
                continue
            if error is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(error)

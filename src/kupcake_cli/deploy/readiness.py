"""Bounded readiness polling.

Every wait in a deployment goes through wait_until_ready: poll an async
check until it answers, or fail with ReadinessTimeoutError naming what was
being waited for.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import ReadinessTimeoutError
from . import rpc

logger = logging.getLogger(__name__)

# Defaults
POLL_INTERVAL = 2.0
RPC_READY_TIMEOUT = 60.0
FILE_SETTLE_DELAY = 0.1


async def wait_until_ready(
    name: str,
    check: Callable[[], Awaitable[Any]],
    interval: float = POLL_INTERVAL,
    timeout: float = RPC_READY_TIMEOUT,
) -> Any:
    """Poll check() until it returns a truthy value.

    Exceptions raised by check() count as "not ready yet".

    Args:
        name: What is being waited for (used in the timeout error).
        check: Async callable returning a truthy value once ready.
        interval: Seconds between attempts.
        timeout: Total budget in seconds.

    Returns:
        The first truthy value returned by check().

    Raises:
        ReadinessTimeoutError: If the budget is exhausted.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    last_error: str | None = None

    while True:
        attempts += 1
        try:
            result = await check()
            if result:
                logger.debug("%s ready after %d attempt(s)", name, attempts)
                return result
            last_error = None
        except Exception as e:
            last_error = str(e)
            logger.debug("Readiness check for %s failed, retrying: %s", name, e)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            data: dict[str, Any] = {"name": name, "attempts": attempts, "timeout": timeout}
            if last_error:
                data["last_error"] = last_error
            raise ReadinessTimeoutError(
                message=f"Timeout waiting for {name} to be ready",
                data=data,
            )

        await asyncio.sleep(min(interval, remaining))


class _FileAppearedHandler(FileSystemEventHandler):
    """Set an asyncio.Event when the target path is created or moved into place."""

    def __init__(self, target: Path, loop: asyncio.AbstractEventLoop, event: asyncio.Event):
        self.target = target
        self.loop = loop
        self.event = event

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and Path(p) == self.target for p in paths):
            self.loop.call_soon_threadsafe(self.event.set)


async def wait_for_file(path: Path | str, timeout: float) -> Path:
    """Wait for a file to appear, using filesystem notifications.

    After the file is first seen, waits a short settle delay so a writer
    still flushing it is not read half-written.

    Args:
        path: File to wait for. Its parent directory is created if missing.
        timeout: Budget in seconds.

    Returns:
        The path.

    Raises:
        ReadinessTimeoutError: If the file does not appear in time.
    """
    target = Path(path).absolute()
    target.parent.mkdir(parents=True, exist_ok=True)

    appeared = asyncio.Event()
    handler = _FileAppearedHandler(target, asyncio.get_running_loop(), appeared)
    observer = Observer()
    observer.schedule(handler, str(target.parent), recursive=False)
    observer.start()

    try:
        # The file may have been written before the watch started
        if not target.exists():
            try:
                await asyncio.wait_for(appeared.wait(), timeout)
            except asyncio.TimeoutError:
                raise ReadinessTimeoutError(
                    message=f"Timeout waiting for {target} to be ready",
                    data={"path": str(target), "timeout": timeout},
                )
        await asyncio.sleep(FILE_SETTLE_DELAY)
    finally:
        observer.stop()
        observer.join()

    logger.debug("File %s is available", target)
    return target


async def wait_for_rpc(
    name: str,
    url: str,
    timeout: float = RPC_READY_TIMEOUT,
    interval: float = POLL_INTERVAL,
) -> int:
    """Wait until an Ethereum JSON-RPC endpoint answers eth_chainId.

    Returns:
        The chain id reported by the endpoint.
    """
    return await wait_until_ready(name, lambda: rpc.chain_id(url), interval=interval, timeout=timeout)


async def wait_for_balance_change(
    url: str,
    address: str,
    initial: int,
    timeout: float = RPC_READY_TIMEOUT,
    interval: float = POLL_INTERVAL,
) -> int:
    """Wait until an address balance differs from initial.

    Returns:
        The new balance in wei.
    """

    async def _changed() -> int | None:
        balance = await rpc.get_balance(url, address)
        return balance if balance != initial else None

    return await wait_until_ready(
        f"balance change of {address}", _changed, interval=interval, timeout=timeout
    )

"""
Call Worker - the single consumer of one call's event queue.

Events for a call are processed strictly in arrival order; calls never
share a lock. Webhook handlers submit() and await the resulting control
document; background tasks post() and move on.

The worker exits once its machine is settled (terminal with every
sentiment result folded in) and the queue is drained.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Callable, Optional

from calls.events import CallInput
from calls.state_machine import CallStateMachine

logger = structlog.get_logger()


class CallWorker:
    """
    Usage:
        worker = CallWorker(machine, on_settled=registry.remove)
        worker.start()
        doc = await worker.submit(SpeechReceived(text="hi"))
        worker.post(CancelRequested())
    """

    def __init__(self, machine: CallStateMachine, on_settled: Optional[Callable[[CallStateMachine], None]] = None):
        self.machine = machine
        self.on_settled = on_settled
        self._queue: asyncio.Queue[tuple[CallInput, Optional[asyncio.Future]]] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        machine.bind(self.post)

    @property
    def call_id(self) -> str:
        return self.machine.call.id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def submit(self, event: CallInput) -> Optional[str]:
        """Enqueue an event and wait for the control document it produces."""
        if self._task is not None and self._task.done():
            # Settled: whatever arrives now is a no-op for the machine
            return await self.machine.handle(event)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((event, future))
        self.start()
        return await future

    def post(self, event: CallInput) -> None:
        """Fire-and-forget enqueue."""
        if self._task is not None and self._task.done():
            logger.debug("event_after_settle_dropped", call_id=self.call_id, event_type=type(event).__name__)
            return
        self._queue.put_nowait((event, None))
        self.start()

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        logger.debug("call_worker_started", call_id=self.call_id)
        while True:
            event, future = await self._queue.get()
            try:
                result = await self.machine.handle(event)
            except Exception as e:
                logger.error("call_event_failed", call_id=self.call_id,
                             event_type=type(event).__name__, error=str(e), exc_info=True)
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

            if self.machine.settled and self._queue.empty():
                break

        logger.debug("call_worker_settled", call_id=self.call_id,
                     status=self.machine.call.status.value)
        if self.on_settled:
            self.on_settled(self.machine)

"""
Consumption binding control.

The transport's consumer is the only thing that decides whether queued
messages get delivered. Pausing it (instead of skipping messages inside the
handler) is what keeps messages queued while processing is disabled.

- ConsumptionController: what a transport binding must offer (pause/resume/status).
- ConsumptionBindingController: listens to ProcessingControlState transitions
  and applies them to one binding, in order, from a single drain task.
"""

import asyncio
import logging
from typing import Optional, Protocol, Union

from .state import ProcessingControlState, StateChange, Transition

logger = logging.getLogger("extraction.binding")

RUNNING = "running"
STOPPED = "stopped"
UNKNOWN = "unknown"

_FORCE_STOP = "force-stop"

Command = Union[Transition, str]


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class ConsumptionController(Protocol):
    name: str

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def status(self) -> str: ...


class ConsumptionBindingController:
    """
    Applies control-state transitions to a binding.

    Transitions are queued by the state observer and applied one at a time by
    a single task, so a quick start/stop/start sequence reaches the transport
    in the same order. Failures are logged and swallowed: an operator can
    always retry through the control API.
    """

    def __init__(
        self,
        binding: ConsumptionController,
        state: ProcessingControlState,
        *,
        startup_delay: float = 2.0,
    ) -> None:
        self.binding = binding
        self.state = state
        self.startup_delay = startup_delay
        self._events: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None
        self._startup: Optional[asyncio.Task] = None

    @property
    def binding_name(self) -> str:
        return self.binding.name

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        """Begin draining transitions and schedule the startup force-stop."""
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self.state.subscribe(self._on_state_change)
        self._worker = asyncio.create_task(self._drain(), name=f"binding-{self.binding_name}")
        self._startup = asyncio.create_task(self._force_stop_after_delay())

    async def close(self) -> None:
        for task in (self._startup, self._worker):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker = None
        self._startup = None

    def _on_state_change(self, change: StateChange) -> None:
        # May be called from any thread; hand over to the loop that owns the queue.
        if self._loop is None or self._events is None:
            logger.warning("Binding controller not started, dropping %s", change.transition.value)
            return
        if _running_loop() is self._loop:
            self._events.put_nowait(change.transition)
        else:
            self._loop.call_soon_threadsafe(self._events.put_nowait, change.transition)

    async def _force_stop_after_delay(self) -> None:
        """
        Transports often auto-start their consumers. Once the consumption
        subsystem had time to come up, force the binding to stopped so the
        transport default never overrides the disabled-at-startup state.
        """
        await asyncio.sleep(self.startup_delay)
        logger.info("Initializing binding %s to STOPPED state", self.binding_name)
        self._events.put_nowait(_FORCE_STOP)

    # -------------------------------------------------------------------------
    # Drain loop
    # -------------------------------------------------------------------------
    async def _drain(self) -> None:
        while True:
            command = await self._events.get()
            try:
                await self._apply(command)
            finally:
                self._events.task_done()

    async def _apply(self, command: Command) -> None:
        if command == _FORCE_STOP:
            await self._change(Transition.STOPPED)
            # an operator may have enabled processing while we were waiting
            if self.state.enabled:
                logger.info("Processing was enabled during startup, resuming binding %s", self.binding_name)
                await self._change(Transition.STARTED)
            return
        await self._change(command)

    async def _change(self, transition: Transition) -> None:
        logger.info("Attempting to change binding %s state to %s", self.binding_name, transition.value)
        try:
            if transition is Transition.STARTED:
                await self.binding.resume()
            else:
                await self.binding.pause()
            logger.info("Binding %s is now %s", self.binding_name, transition.value)
        except Exception as e:
            logger.error("Failed to change binding state for %s: %s", self.binding_name, e, exc_info=True)

    async def settle(self, timeout: float) -> bool:
        """
        Wait until every queued transition has been applied.
        Returns False if that did not happen within `timeout` seconds.
        """
        if self._events is None:
            return False
        try:
            await asyncio.wait_for(self._events.join(), timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Binding %s did not settle within %.1fs", self.binding_name, timeout)
            return False

    # -------------------------------------------------------------------------
    # Queries (best effort)
    # -------------------------------------------------------------------------
    async def status(self) -> str:
        try:
            return await self.binding.status()
        except Exception as e:
            logger.warning("Failed to query binding state: %s", e)
            return UNKNOWN

    async def is_running(self) -> bool:
        return await self.status() == RUNNING

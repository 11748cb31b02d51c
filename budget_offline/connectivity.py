import asyncio
import logging

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Keeps ``state.is_online`` current and fires ``on_online`` when the link comes back.

    The flag follows explicit online/offline events immediately; a polling task
    re-checks the probe every ``poll_interval`` seconds for platforms whose
    events are unreliable. A falsy ``poll_interval`` disables polling.
    """

    def __init__(self, state, probe, on_online, poll_interval=5.0):
        self.state = state
        self.probe = probe
        self.on_online = on_online
        self.poll_interval = poll_interval
        self._poll_task = None
        self._tasks = set()

    @property
    def is_polling(self):
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self):
        self.state.is_online = await self._check()
        if self.poll_interval and self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Connectivity monitor started (online=%s)", self.state.is_online)

    async def stop(self):
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.drain()

    def set_online(self):
        self._update(True)

    def set_offline(self):
        self._update(False)

    async def poll_once(self):
        self._update(await self._check())
        return self.state.is_online

    def schedule(self, callback):
        """Run ``callback()`` as a background task tracked by ``drain``."""
        task = asyncio.create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    async def drain(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _finished(self, task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    async def _check(self):
        try:
            return bool(await self.probe())
        except Exception as exc:
            logger.warning("Connectivity probe failed, treating as offline: %s", exc)
            return False

    def _update(self, online):
        was_online = self.state.is_online
        self.state.is_online = online
        if online and not was_online:
            logger.info("Connection restored, syncing pending changes")
            self.schedule(self.on_online)
        elif was_online and not online:
            logger.info("Connection lost, working offline")

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once()

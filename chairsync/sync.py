import anyio

import collections
import inspect
import logging

from .replicate import DEFAULT_BATCH_SIZE, replicate

logger = logging.getLogger(__name__)

EVENTS = ('change', 'paused', 'active', 'error', 'complete')
DEFAULT_RETRY_DELAY = 1.0  # seconds


class SyncSession:
    """Bidirectional replication between 'local' and 'remote', like PouchDB's
    sync(). Pushes (local to remote) and pulls (remote to local) at the same
    time. Normally created by calling 'local.sync(remote)', which also
    schedules run() in the background.

    Use on(event, listener) to get notified. Listeners are called with a
    single argument, and can be plain functions or coroutine functions:

    - 'change': a SyncChange, whenever documents were replicated
    - 'paused': the direction ('push' or 'pull') that caught up
    - 'active': the direction that resumed replicating
    - 'error': the exception that interrupted a direction. With live=True,
      that direction is restarted after 'retry_delay' seconds.
    - 'complete': a {'push': ..., 'pull': ...} summary, once both directions
      are finished or the session is cancelled.

    """
    def __init__(self, local, remote, live=False,
                 retry_delay=DEFAULT_RETRY_DELAY,
                 batch_size=DEFAULT_BATCH_SIZE):
        self.local = local
        self.remote = remote
        self.live = live
        self.retry_delay = retry_delay
        self.batch_size = batch_size

        self._listeners = collections.defaultdict(list)
        self._cancel_scope = anyio.CancelScope()
        self._results = {'push': None, 'pull': None}

    def on(self, event, listener):
        if event not in EVENTS:
            raise ValueError(f'unknown event: {event}')
        self._listeners[event].append(listener)
        return self

    def cancel(self):
        self._cancel_scope.cancel()

    async def run(self):
        with self._cancel_scope:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._replicate, 'push', self.local, self.remote)
                tg.start_soon(self._replicate, 'pull', self.remote, self.local)
        await self._emit('complete', {
            'cancelled': self._cancel_scope.cancel_called,
            **self._results,
        })

    async def _replicate(self, direction, source, target):
        while True:
            try:
                result = await replicate(source, target, continuous=self.live,
                                         batch_size=self.batch_size,
                                         direction=direction,
                                         emit=self._emit)
            except Exception as exc:
                await self._emit('error', exc)
                if not self.live:
                    self._results[direction] = {'ok': False, 'error': exc}
                    return
                await anyio.sleep(self.retry_delay)
            else:
                self._results[direction] = result
                return

    async def _emit(self, event, payload):
        for listener in list(self._listeners[event]):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception('%r listener %r failed', event, listener)

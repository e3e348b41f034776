"""Functionality shared by the in-memory and the HTTP database."""

import anyio

import contextlib

from ..sync import SyncSession

# seconds, like CouchDB's default heartbeat-less longpoll timeout
LONGPOLL_TIMEOUT = 60.0


class SyncHostMixin:
    """Runs the sync sessions started by sync() in the background. The
    database needs to be used as an async context manager for that: sessions
    run until the 'async with' block is left.

    Requires the following to be called by the class:

    - await self._open_host() from __aenter__
    - await self._close_host(*exc_info) from __aexit__

    """
    _task_group = None

    async def _open_host(self):
        self._exit_stack = contextlib.AsyncExitStack()
        task_group = anyio.create_task_group()
        await self._exit_stack.enter_async_context(task_group)
        self._task_group = task_group

    async def _close_host(self, *exc_info):
        task_group, self._task_group = self._task_group, None
        task_group.cancel_scope.cancel()
        await self._exit_stack.__aexit__(*exc_info)

    def sync(self, peer, live=False, **opts):
        """Like PouchDB's db.sync(): replicate to and from 'peer' in the
        background. With live=True, that keeps going until the session is
        cancelled or this database is closed. 'opts' are passed on to
        SyncSession.

        Returns the SyncSession immediately, so you can attach listeners
        using its on() method. Errors are reported to the 'error' listeners,
        never raised from here. (Except for using sync() on a database that
        isn't open.)

        """
        if self._task_group is None:
            raise RuntimeError('sync() requires an open database. Use it as '
                               'an async context manager ("async with").')
        session = SyncSession(self, peer, live=live, **opts)
        self._task_group.start_soon(session.run)
        return session


class ContinuousChangesMixin:
    """Requires the following to be implemented:

    - self._has_changes_since(since), which tells if anything was written
      after 'since'.

    Also requires that the class calls:

    - self._updated(), whenever a new (non-local) document has been written

    """
    def _updated(self):
        if hasattr(self, '_update_event'):
            self._update_event.set()
            del self._update_event

    async def wait_for_changes(self, since=None, timeout=LONGPOLL_TIMEOUT):
        """Like CouchDB's _changes?feed=longpoll, without returning the
        changes themselves: returns as soon as there is a change after 'since'
        or after 'timeout' seconds, whichever comes first.

        """
        with anyio.move_on_after(timeout):
            while not self._has_changes_since(since):
                if not hasattr(self, '_update_event'):
                    self._update_event = anyio.Event()
                await self._update_event.wait()

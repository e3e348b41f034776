import pytest

import anyio
import logging

from chairsync import (InMemoryDatabase, NotFound, SyncChange,
                       initialize_db_sync)

pytestmark = pytest.mark.anyio


class FakeSession:
    def __init__(self):
        self.listeners = []

    def on(self, event, listener):
        self.listeners.append((event, listener))
        return self

    def emit(self, event, payload):
        for name, listener in self.listeners:
            if name == event:
                listener(payload)


class FakeLocalStore:
    def __init__(self):
        self.sync_calls = []
        self.session = FakeSession()

    def sync(self, peer, **opts):
        self.sync_calls.append((peer, opts))
        return self.session


class BrokenStore:
    """Every replication attempt fails at the first step."""

    @property
    def update_seq(self):
        return self._fail()

    async def _fail(self):
        raise ConnectionError('remote database is unreachable')


def test_initialize_registers_listeners():
    local, remote = FakeLocalStore(), object()
    received = []
    session = initialize_db_sync(local, remote, received.append)

    assert session is local.session
    assert local.sync_calls == [(remote, {'live': True})]
    assert [event for event, _ in session.listeners] == ['change', 'error']
    session.emit('change', 'payload')
    assert received == ['payload']


def test_initialize_logs_errors(caplog):
    local = FakeLocalStore()
    received = []
    initialize_db_sync(local, object(), received.append)

    local.session.emit('error', ConnectionError('offline'))
    assert received == []
    [record] = caplog.records
    assert record.levelno == logging.ERROR
    assert 'offline' in record.getMessage()


def test_initialize_without_callback():
    local = FakeLocalStore()
    initialize_db_sync(local, object())
    # the default listener ignores changes
    local.session.emit('change', 'payload')


def test_initialize_custom_logger(caplog):
    local = FakeLocalStore()
    initialize_db_sync(local, object(), logger=logging.getLogger('myapp'))
    local.session.emit('error', ConnectionError())
    assert [r.name for r in caplog.records] == ['myapp']


# with actual databases
async def test_live_sync():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    local.put_sync({'_id': 'a', 'value': 1})
    remote.put_sync({'_id': 'b', 'value': 2})
    changes = []

    async with local:
        initialize_db_sync(local, remote, changes.append)
        # the initial state is exchanged...
        await document_existance(remote, 'a')
        await document_existance(local, 'b')
        # ... and later changes on either side follow
        remote.put_sync({'_id': 'c', 'value': 3})
        await document_existance(local, 'c')
        rev = local.get_sync('a')['_rev']
        local.put_sync({'_id': 'a', '_rev': rev, 'value': 4})
        await wait_until(lambda: remote.get_sync('a')['value'] == 4)

    assert all(isinstance(change, SyncChange) for change in changes)
    assert {change.direction for change in changes} == {'push', 'pull'}
    pulled = [doc['_id'] for change in changes if change.direction == 'pull'
              for doc in change.docs]
    assert pulled == ['b', 'c']


async def test_live_sync_deletion():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    result = local.put_sync({'_id': 'a'})
    async with local:
        initialize_db_sync(local, remote)
        await document_existance(remote, 'a')
        local.remove_sync('a', result['rev'])
        await wait_until(lambda: remote.doc_count_sync == 0)
    with pytest.raises(NotFound):
        remote.get_sync('a')


async def test_live_sync_errors_are_logged(caplog):
    local = InMemoryDatabase()
    changes = []
    async with local:
        initialize_db_sync(local, BrokenStore(), changes.append)
        await wait_until(lambda: len(caplog.records) >= 2)
    assert changes == []
    assert {r.levelname for r in caplog.records} == {'ERROR'}
    assert 'unreachable' in caplog.records[0].getMessage()


async def test_live_sync_retries():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    local.put_sync({'_id': 'a'})
    errors = []
    broken = True
    remote_changes = remote.changes

    def flaky_changes(*args, **kwargs):
        if broken:
            raise ConnectionError('flaky')
        return remote_changes(*args, **kwargs)
    remote.changes = flaky_changes

    async with local:
        local.sync(remote, live=True, retry_delay=0.01).on('error',
                                                           errors.append)
        await wait_until(lambda: errors)
        broken = False
        await document_existance(remote, 'a')  # pushed
        remote.put_sync({'_id': 'b'})
        await document_existance(local, 'b')  # pulled after a retry


async def test_one_off_sync():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    local.put_sync({'_id': 'a'})
    remote.put_sync({'_id': 'b'})
    completed = []
    async with local:
        local.sync(remote).on('complete', completed.append)
        await wait_until(lambda: completed)

    [summary] = completed
    assert not summary['cancelled']
    assert summary['push']['docs_written'] == 1
    assert summary['pull']['docs_written'] == 1
    assert local.doc_count_sync == remote.doc_count_sync == 2


async def test_paused_and_active_events():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    events = []
    async with local:
        session = local.sync(remote, live=True)
        for event in ('paused', 'active'):
            session.on(event, lambda direction, event=event:
                       events.append((event, direction)))
        await wait_until(lambda: len(events) == 2)
        assert sorted(events) == [('paused', 'pull'), ('paused', 'push')]

        local.put_sync({'_id': 'a'})
        await wait_until(lambda: ('active', 'push') in events)


async def test_cancel():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    completed = []
    async with local:
        session = local.sync(remote, live=True)
        session.on('complete', completed.append)
        await anyio.sleep(0.01)
        session.cancel()
        await wait_until(lambda: completed)
        # nothing is replicated anymore
        local.put_sync({'_id': 'a'})
        await anyio.sleep(0.01)
    assert completed[0]['cancelled']
    assert remote.doc_count_sync == 0


async def test_failing_listener(caplog):
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    local.put_sync({'_id': 'a'})
    changes = []

    def broken_listener(change):
        raise RuntimeError('oops')

    async def async_listener(change):
        await anyio.sleep(0)
        changes.append(change)

    async with local:
        session = local.sync(remote, live=True)
        session.on('change', broken_listener).on('change', async_listener)
        await wait_until(lambda: changes)
    assert 'oops' in caplog.text


def test_sync_requires_open_database():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    with pytest.raises(RuntimeError):
        local.sync(remote)


async def test_unknown_listener_event():
    local, remote = InMemoryDatabase(), InMemoryDatabase()
    async with local:
        session = local.sync(remote)
        with pytest.raises(ValueError):
            session.on('denied', print)


async def document_existance(db, id):
    def exists():
        try:
            db.get_sync(id)
        except NotFound:
            return False
        return True
    await wait_until(exists)


async def wait_until(condition, timeout=5):
    with anyio.fail_after(timeout):
        while not condition():
            await anyio.sleep(0.001)

import pytest

import anyio

from chairsync import BadRequest, InMemoryDatabase, NotFound, replicate
from chairsync.replicate import (HISTORY_LENGTH, REPLICATION_ID_VERSION,
                                 build_history, compare_replication_logs,
                                 gen_repl_id)

pytestmark = pytest.mark.anyio


async def test_replicate():
    source, target = InMemoryDatabase(), InMemoryDatabase()
    source.put_sync({'_id': 'a', 'hello': 'world'})
    result = source.put_sync({'_id': 'b'})
    source.remove_sync('b', result['rev'])

    result = await replicate(source, target)
    assert result['ok']
    assert result['start_last_seq'] is None
    assert result['last_seq'] == 3
    assert result['docs_read'] == result['docs_written'] == 2
    assert result['doc_write_failures'] == 0

    assert target.get_sync('a') == source.get_sync('a')
    assert target.get_sync('a', revs=True)['_revisions'] == \
        source.get_sync('a', revs=True)['_revisions']
    with pytest.raises(NotFound) as exc_info:
        target.get_sync('b')
    assert exc_info.value.reason == 'deleted'
    assert target.doc_count_sync == 1


async def test_checkpoint():
    source, target = InMemoryDatabase(), InMemoryDatabase()
    source.put_sync({'_id': 'a'})
    first = await replicate(source, target)

    # nothing changed, so nothing needs to be done
    second = await replicate(source, target)
    assert second['start_last_seq'] == first['last_seq']
    assert second['docs_read'] == 0

    # only the new document is replicated
    source.put_sync({'_id': 'b'})
    third = await replicate(source, target)
    assert third['start_last_seq'] == first['last_seq']
    assert third['docs_read'] == 1

    # the log is stored in both databases
    repl_id = await gen_repl_id(source, target, False)
    log = source.read_local_sync(repl_id)
    assert log == target.read_local_sync(repl_id)
    assert log['replication_id_version'] == REPLICATION_ID_VERSION
    assert log['session_id'] == third['session_id']
    assert log['source_last_seq'] == third['last_seq']
    assert [item['session_id'] for item in log['history']] == [
        third['session_id'],
        first['session_id'],
    ]


async def test_checkpoints_dont_leak_into_changes():
    source, target = InMemoryDatabase(), InMemoryDatabase()
    source.put_sync({'_id': 'a'})
    await replicate(source, target)
    assert source.update_seq_sync == target.update_seq_sync == 1
    assert target.all_docs_sync()['total_rows'] == 1


async def test_conflicts():
    source, target = InMemoryDatabase(), InMemoryDatabase()
    base = {'_id': 'x', '_rev': '1-a', 'value': 0}
    source.write_sync(base)
    target.write_sync(base)
    source.write_sync({'_id': 'x', '_rev': '2-b', 'value': 'source',
                       '_revisions': {'start': 2, 'ids': ['b', 'a']}})
    target.write_sync({'_id': 'x', '_rev': '2-c', 'value': 'target',
                       '_revisions': {'start': 2, 'ids': ['c', 'a']}})

    await replicate(source, target)
    await replicate(target, source)

    # both sides agree on the winner: the highest revision hash
    for db in (source, target):
        doc = db.get_sync('x', conflicts=True)
        assert doc['_rev'] == '2-c'
        assert doc['value'] == 'target'
        assert doc['_conflicts'] == ['2-b']


async def test_batches():
    source, target = InMemoryDatabase(), InMemoryDatabase()
    for i in range(5):
        source.put_sync({'_id': f'doc{i}'})
    events = []

    async def emit(event, payload):
        events.append((event, payload))

    result = await replicate(source, target, batch_size=2, emit=emit)
    assert result['docs_written'] == 5
    assert [event for event, _ in events] == ['change'] * 3
    assert [len(change.docs) for _, change in events] == [2, 2, 1]
    assert [change.last_seq for _, change in events] == [2, 4, 5]
    assert all(change.direction is None for _, change in events)


async def test_write_failures(caplog):
    source, target = InMemoryDatabase(), InMemoryDatabase()
    source.put_sync({'_id': 'good'})
    source.put_sync({'_id': 'bad'})
    write_sync = target.write_sync

    def picky_write_sync(doc):
        if doc['_id'] == 'bad':
            raise BadRequest('no bad documents allowed')
        return write_sync(doc)
    target.write_sync = picky_write_sync

    result = await replicate(source, target)
    assert result['docs_read'] == 2
    assert result['docs_written'] == 1
    assert result['doc_write_failures'] == 1
    assert 'no bad documents allowed' in caplog.text


class MissingDatabase:
    @property
    def update_seq(self):
        return self._missing()

    async def _missing(self):
        raise NotFound('Database does not exist.')


async def test_missing_database():
    target = InMemoryDatabase()
    with pytest.raises(NotFound):
        await replicate(MissingDatabase(), target)
    with pytest.raises(NotFound):
        await replicate(target, MissingDatabase())


async def test_replicate_continuous():
    source, target = InMemoryDatabase(), InMemoryDatabase()
    source.put_sync({'_id': 'test'})
    events = []

    async def emit(event, payload):
        events.append(event)

    async with anyio.create_task_group() as tg:
        tg.start_soon(lambda: replicate(source, target, continuous=True,
                                        direction='push', emit=emit))
        # verify the 'normal' replication is done (everything in the db has
        # been replicated succesfully)
        await document_existance(target, 'test')
        # wait until the replicator ran out of changes
        await wait_until(lambda: 'paused' in events)
        # now write another document to check 'continuous=True'
        source.put_sync({'_id': 'test2'})
        await document_existance(target, 'test2')
        await wait_until(lambda: len(events) >= 4)
        # clean up
        tg.cancel_scope.cancel()
    assert events[:4] == ['change', 'paused', 'active', 'change']


def test_compare_replication_logs():
    log = {
        'replication_id_version': REPLICATION_ID_VERSION,
        'session_id': 'b',
        'source_last_seq': 10,
        'history': [
            {'session_id': 'b', 'recorded_seq': 10},
            {'session_id': 'a', 'recorded_seq': 5},
        ],
    }
    assert compare_replication_logs(None, log) is None
    assert compare_replication_logs(log, log) == 10
    # the target missed the last session
    old_log = {**log, 'session_id': 'a', 'history': log['history'][1:]}
    assert compare_replication_logs(log, old_log) == 5
    # no shared history at all
    other = {**log, 'session_id': 'c',
             'history': [{'session_id': 'c', 'recorded_seq': 3}]}
    assert compare_replication_logs(log, other) is None
    # a different protocol version
    assert compare_replication_logs(log, {**log,
                                          'replication_id_version': 0}) is None


def test_build_history():
    assert [item['session_id'] for item in build_history(None, 'a', 1)] == \
        ['a']
    log = {'history': [{'session_id': str(i)} for i in range(10)]}
    history = build_history(log, '3', 20)
    assert len(history) == HISTORY_LENGTH
    assert [item['session_id'] for item in history] == \
        ['3', '0', '1', '2', '4']
    assert history[0]['recorded_seq'] == 20


async def document_existance(db, id):
    while True:
        try:
            return db.get_sync(id)
        except NotFound:
            await anyio.sleep(0)


async def wait_until(condition, timeout=5):
    with anyio.fail_after(timeout):
        while not condition():
            await anyio.sleep(0.001)

import anyio

import email.utils
import hashlib
import logging
import uuid

from .datatypes import SyncChange
from .errors import NotFound
from .utils import to_list

logger = logging.getLogger(__name__)

REPLICATION_ID_VERSION = 1
DEFAULT_BATCH_SIZE = 100
HISTORY_LENGTH = 5


async def replicate(source, target, continuous=False,
                    batch_size=DEFAULT_BATCH_SIZE, direction=None, emit=None):
    """Replicates the database 'source' to 'target', loosely following
    CouchDB's replication protocol. Writes checkpoints to prevent unnecessary
    future work.

    https://docs.couchdb.org/en/stable/replication/protocol.html

    'emit' is an optional coroutine function that is called as
    emit(event, payload) for the following events:

    - 'change', with a SyncChange, after each batch that moved documents
    - 'paused', with 'direction', when caught up in continuous mode
    - 'active', with 'direction', when resuming after 'paused'

    Without continuous=True, a summary is returned once all changes are
    replicated. With it, this never returns: new changes keep being
    replicated until the task is cancelled. Errors (of the databases) are
    raised.

    """
    emit = emit or ignore_event
    session_id = uuid.uuid4().hex
    stats = {'docs_read': 0, 'docs_written': 0, 'doc_write_failures': 0}

    # Verify Peers (raises e.g. NotFound or Unauthorized)
    await source.update_seq
    await target.update_seq

    # Find Common Ancestry
    replication_id = await gen_repl_id(source, target, continuous)
    source_log = await source.read_local(replication_id)
    target_log = await target.read_local(replication_id)
    since = startup_seq = compare_replication_logs(source_log, target_log)
    logger.debug('replication %s starting at seq %r', replication_id, since)

    paused = False
    while True:
        # Locate Changed Documents
        changes = await to_list(source.changes(since=since, limit=batch_size))
        if not changes:
            if not continuous:
                break
            if not paused:
                paused = True
                await emit('paused', direction)
            await source.wait_for_changes(since)
            continue
        if paused:
            paused = False
            await emit('active', direction)

        # Replicate Changes
        docs, failures = await replicate_batch(source, target, changes)
        since = changes[-1].seq
        stats['docs_read'] += len(docs)
        stats['docs_written'] += len(docs) - len(failures)
        stats['doc_write_failures'] += len(failures)
        for failure in failures:
            logger.warning('replication %s failed writing: %r',
                           replication_id, failure)

        # Record Replication Checkpoint
        await write_checkpoint(source, target, replication_id, {
            'session_id': session_id,
            'source_last_seq': since,
            'history': build_history(source_log, session_id, since),
        })
        if docs:
            await emit('change', SyncChange(direction, docs, since, len(docs),
                                            len(docs) - len(failures),
                                            len(failures)))
        # give other tasks a chance between batches
        await anyio.sleep(0)

    return {
        'ok': True,
        'session_id': session_id,
        'start_last_seq': startup_seq,
        'last_seq': since,
        **stats,
    }


async def ignore_event(event, payload):
    pass


async def gen_repl_id(source, target, continuous):
    repl_id_values = ''.join([
        await source.id,
        await target.id,
        str(continuous),
    ]).encode('UTF-8')
    return hashlib.md5(repl_id_values).hexdigest()


def compare_replication_logs(source, target):
    no_checkpoint = (
        # because there is no record of a previous replication
        source is None or target is None or
        # or because said replication happened under different (possibly buggy)
        # conditions
        source.get('replication_id_version') != REPLICATION_ID_VERSION or
        target.get('replication_id_version') != REPLICATION_ID_VERSION
    )
    if no_checkpoint:
        return None
    if source['session_id'] == target['session_id']:
        return source['source_last_seq']  # shortcut

    # try to find commonality in diverging histories:
    session_ids = {item['session_id'] for item in source['history']}
    for item in target['history']:
        if item['session_id'] in session_ids:
            # found a previous shared session
            return item['recorded_seq']
    # no such luck: there's no known checkpoint.
    return None


async def replicate_batch(source, target, changes):
    diff = await target.revs_diff({c.id: c.leaf_revs for c in changes})
    requested = [(id, rev) for id, info in diff.items()
                 for rev in info['missing']]
    if not requested:
        return [], []

    docs = []
    async for doc in source.bulk_get(requested):
        if isinstance(doc, NotFound):
            continue  # e.g. a leaf that was replaced in the mean time
        docs.append(doc)
    failures = await to_list(target.write(docs))
    return docs, failures


async def write_checkpoint(source, target, replication_id, log):
    log = {'replication_id_version': REPLICATION_ID_VERSION, **log}
    await source.write_local(replication_id, log)
    await target.write_local(replication_id, log)


def build_history(existing_log, session_id, recorded_seq):
    entry = {
        'session_id': session_id,
        'recorded_seq': recorded_seq,
        'end_time': timestamp(),
    }
    try:
        existing_history = existing_log['history']
    except TypeError:
        return [entry]
    # the current session might already be in there from an earlier batch
    older = [item for item in existing_history
             if item['session_id'] != session_id]
    return [entry] + older[:HISTORY_LENGTH - 1]


def timestamp():
    return email.utils.format_datetime(email.utils.localtime())

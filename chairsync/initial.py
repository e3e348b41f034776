"""Helpers to load the initial state of an application from a remote database,
falling back to a local copy when the remote one can't be reached, and to keep
the two in sync afterwards.

'local' and 'remote' can be any object implementing the DocumentStore
protocol (see store.py), e.g. an InMemoryDatabase and an HTTPDatabase.

Every helper accepts an optional 'logger' to redirect the warnings (and, for
initialize_db_sync, the errors) it reports. It defaults to this module's
logger.

"""
import logging

logger = logging.getLogger(__name__)

DEFAULT_ALL_DOCS_OPTIONS = {
    'include_docs': True,
    'attachments': True,
    'limit': 99999,
}


async def get_initial_all_docs(local, remote, *, logger=logger,
                               **extra_options):
    """Retrieve an initial set of documents using all_docs.

    Attempt to retrieve all documents from the remote database. Fallback to
    the local one. 'extra_options' override DEFAULT_ALL_DOCS_OPTIONS. If the
    local database fails as well, its error is raised.

    Design documents (and any other document with an id starting with '_')
    are left out.

    """
    options = {**DEFAULT_ALL_DOCS_OPTIONS, **extra_options}
    try:
        result = await remote.all_docs(**options)
    except Exception as exc:
        logger.warning('all_docs failed on the remote database: %r', exc)
        result = await local.all_docs(**options)

    # TODO: filter in the all_docs query itself (using start_key/end_key)
    # once callers no longer override the key range.
    docs = (row.get('doc') for row in result['rows'])
    return [doc for doc in docs
            if doc is not None and not doc['_id'].startswith('_')]


async def get_initial_find_docs(local, remote, query, *, logger=logger):
    """Retrieve an initial set of documents using find.

    Attempt to retrieve the documents matching 'query' (a Mango query, passed
    on as-is) from the remote database. Fallback to the local one. If the
    local database fails as well, its error is raised.

    """
    try:
        return (await remote.find(query))['docs']
    except Exception as exc:
        logger.warning('find failed on the remote database: %r', exc)
        return (await local.find(query))['docs']


async def get_initial_get_doc(local, remote, id, *, logger=logger):
    """Retrieve an initial document.

    Attempt to retrieve the document with id 'id' from the remote database.
    Fallback to the local one. Unlike the other helpers, this returns None
    instead of raising when the local database fails too: a missing document
    is a normal outcome here.

    """
    try:
        return await remote.get(id)
    except Exception as exc:
        logger.warning('get %r failed on the remote database: %r', id, exc)
    try:
        return await local.get(id)
    except Exception:
        return None


def ignore_change(change):
    pass


def initialize_db_sync(local, remote, on_change=None, *, logger=logger):
    """Start a live, two-way sync between 'local' and 'remote'.

    'on_change' is called with a SyncChange for every batch of replicated
    documents. Sync errors are logged, and never raised. Returns immediately
    with the sync session, which keeps running in the background of 'local'
    (so 'local' needs to be open, i.e. used in an 'async with' block).

    """
    return (local.sync(remote, live=True)
            .on('change', on_change or ignore_change)
            .on('error', lambda exc: logger.error('sync failed: %r', exc)))

from .collation import collation_key
from .datatypes import Change, SyncChange
from .dbs import HTTPDatabase, InMemoryDatabase, SyncInMemoryDatabase
from .errors import (BadRequest, ChairSyncError, Conflict, Forbidden,
                     NotFound, PreconditionFailed, Unauthorized)
from .initial import (get_initial_all_docs, get_initial_find_docs,
                      get_initial_get_doc, initialize_db_sync)
from .replicate import replicate
from .selector import compile_selector
from .server import app, build_app
from .server.db import build_db_app
from .store import DocumentStore
from .sync import SyncSession


__all__ = (
    # datatypes
    'Change',
    'SyncChange',
    # dbs
    'DocumentStore',
    'HTTPDatabase',
    'InMemoryDatabase',
    'SyncInMemoryDatabase',
    # errors
    'BadRequest',
    'ChairSyncError',
    'Conflict',
    'Forbidden',
    'NotFound',
    'PreconditionFailed',
    'Unauthorized',
    # initial
    'get_initial_all_docs',
    'get_initial_find_docs',
    'get_initial_get_doc',
    'initialize_db_sync',
    # replication
    'replicate',
    'SyncSession',
    # server
    'app',
    'build_app',
    'build_db_app',
    # misc
    'collation_key',
    'compile_selector',
)

import sortedcontainers

import copy
import itertools
import uuid

from ..collation import collation_key
from ..datatypes import Change, DocumentInfo
from ..errors import BadRequest, ChairSyncError, Conflict, NotFound
from ..selector import MISSING, compile_selector, field
from ..utils import (as_awaitable, new_rev_hash, parse_rev, rev,
                     rev_sort_key, strip_special)
from .shared import ContinuousChangesMixin, SyncHostMixin

LOCAL_PREFIX = '_local/'
DESIGN_PREFIX = '_design/'
DEFAULT_FIND_LIMIT = 25


class SyncInMemoryDatabase:
    """For documentation, see the InMemoryDatabase class."""

    def __init__(self, id=None):
        self.id_sync = (id or uuid.uuid4().hex) + 'memory'
        self.update_seq_sync = 0

        # id -> document body (dict)
        self._local = {}
        # id -> DocumentInfo
        self._byid = sortedcontainers.SortedDict()
        # seq -> id (str)
        self._byseq = sortedcontainers.SortedDict()

    @property
    def doc_count_sync(self):
        return sum(1 for info in self._byid.values() if not is_deleted(info))

    def info_sync(self):
        return {
            'doc_count': self.doc_count_sync,
            'update_seq': self.update_seq_sync,
            'instance_start_time': '0',
        }

    # reading
    def get_sync(self, id, rev=None, revs=False, conflicts=False):
        """Like CouchDB's GET dbname/docid. Without 'rev', the winning
        revision is returned. 'revs=True' adds a '_revisions' key,
        'conflicts=True' a '_conflicts' key (if there are any).

        """
        if id.startswith(LOCAL_PREFIX):
            return self._get_local(id[len(LOCAL_PREFIX):])
        try:
            info = self._byid[id]
        except KeyError:
            raise NotFound('missing') from None

        if rev is None:
            rev = winning_rev(info)
            if is_deleted(info):
                raise NotFound('deleted')
        try:
            body, path = info.leafs[rev]
        except KeyError:
            raise NotFound('missing') from None
        doc = to_doc(id, rev, body, path if revs else None)
        if conflicts:
            add_conflicts(doc, info)
        return doc

    def _get_local(self, id):
        try:
            body = self._local[id]
        except KeyError:
            raise NotFound('missing') from None
        return {'_id': LOCAL_PREFIX + id, '_rev': '0-1', **copy.deepcopy(body)}

    def all_docs_sync(self, include_docs=False, attachments=False,
                      conflicts=False, limit=None, skip=0, descending=False,
                      start_key=None, end_key=None, startkey=None,
                      endkey=None, inclusive_end=True, keys=None):
        """Like CouchDB's _all_docs. Attachments are stored inline in the
        document body, so 'attachments' is accepted but has no effect.

        """
        if keys is not None:
            rows = (self._key_row(key, include_docs, conflicts)
                    for key in keys)
        else:
            start_key = startkey if start_key is None else start_key
            end_key = endkey if end_key is None else end_key
            if descending:
                ids = self._byid.irange(end_key, start_key,
                                        (inclusive_end, True), reverse=True)
            else:
                ids = self._byid.irange(start_key, end_key,
                                        (True, inclusive_end))
            rows = (self._row(id, include_docs, conflicts) for id in ids
                    if not is_deleted(self._byid[id]))
        stop = None if limit is None else skip + limit
        return {
            'total_rows': self.doc_count_sync,
            'offset': skip,
            'rows': list(itertools.islice(rows, skip, stop)),
        }

    def _row(self, id, include_docs, conflicts):
        info = self._byid[id]
        winner = winning_rev(info)
        row = {'id': id, 'key': id, 'value': {'rev': winner}}
        if is_deleted(info):
            row['value']['deleted'] = True
            if include_docs:
                row['doc'] = None
        elif include_docs:
            body, _ = info.leafs[winner]
            row['doc'] = to_doc(id, winner, body)
            if conflicts:
                add_conflicts(row['doc'], info)
        return row

    def _key_row(self, key, include_docs, conflicts):
        if key not in self._byid:
            return {'key': key, 'error': 'not_found'}
        return self._row(key, include_docs, conflicts)

    def find_sync(self, query):
        """Like CouchDB's _find, without any indexes: every (non-design)
        document is matched against the selector.

        """
        if not isinstance(query, dict) or 'selector' not in query:
            raise BadRequest('missing required key: selector')
        match = compile_selector(query['selector'])
        skip = non_negative_int(query, 'skip', 0)
        limit = non_negative_int(query, 'limit', DEFAULT_FIND_LIMIT)

        docs = [doc for doc in self._winning_docs() if match(doc)]
        for path, descending in reversed(parse_sort(query.get('sort', []))):
            docs.sort(key=lambda doc: sort_key(doc, path), reverse=descending)
        docs = docs[skip:skip + limit]

        fields = query.get('fields')
        if fields:
            docs = [project(doc, fields) for doc in docs]
        return {'docs': docs}

    def _winning_docs(self):
        for id, info in self._byid.items():
            if id.startswith(DESIGN_PREFIX) or is_deleted(info):
                continue
            winner = winning_rev(info)
            body, _ = info.leafs[winner]
            yield to_doc(id, winner, body)

    # writing
    def put_sync(self, doc):
        """Like CouchDB's PUT dbname/docid: stores a new edit of a document.
        Its '_rev' needs to match an existing leaf revision (normally the
        current one), or be absent for a new (or deleted) document. Returns
        {'ok': True, 'id': ..., 'rev': ...}.

        """
        doc = dict(doc)
        id = doc.pop('_id', None) or uuid.uuid4().hex
        if id.startswith(LOCAL_PREFIX):
            body = None if doc.get('_deleted') else strip_special(doc)
            self.write_local_sync(id[len(LOCAL_PREFIX):], body)
            return {'ok': True, 'id': id, 'rev': '0-1'}

        prev_rev = doc.pop('_rev', None)
        deleted = bool(doc.pop('_deleted', False))
        body = None if deleted else strip_special(doc)

        parent, parent_path = self._parent_for_edit(id, prev_rev)
        rev_num = parse_rev(parent)[0] + 1 if parent else 1
        rev_hash = new_rev_hash(id, parent, deleted, body)
        new_rev = rev(rev_num, rev_hash)
        self._insert(id, new_rev, body, (rev_hash,) + parent_path)
        return {'ok': True, 'id': id, 'rev': new_rev}

    def _parent_for_edit(self, id, prev_rev):
        try:
            info = self._byid[id]
        except KeyError:
            if prev_rev is not None:
                raise Conflict('Document update conflict.') from None
            return None, ()

        if prev_rev is None:
            # re-creating a deleted document continues its history
            if not is_deleted(info):
                raise Conflict('Document update conflict.')
            prev_rev = winning_rev(info)
        try:
            _, path = info.leafs[prev_rev]
        except KeyError:
            raise Conflict('Document update conflict.') from None
        return prev_rev, path

    def remove_sync(self, id, rev):
        return self.put_sync({'_id': id, '_rev': rev, '_deleted': True})

    def write_sync(self, doc):
        """Like CouchDB's _bulk_docs with new_edits=false for a single
        document: the document is stored under its existing '_rev' and
        '_revisions' history. Returns True if the revision was new.

        """
        doc = dict(doc)
        id = doc.pop('_id')
        if id.startswith(LOCAL_PREFIX):
            self.write_local_sync(id[len(LOCAL_PREFIX):], strip_special(doc))
            return True
        try:
            new_rev = doc.pop('_rev')
            rev_num, rev_hash = parse_rev(new_rev)
        except (KeyError, ValueError):
            raise BadRequest('a valid _rev is required') from None

        revisions = doc.pop('_revisions', {'start': rev_num, 'ids': [rev_hash]})
        path = tuple(revisions['ids'])
        if revisions['start'] != rev_num or path[0] != rev_hash:
            raise BadRequest('_revisions does not match _rev')

        body = None if doc.pop('_deleted', False) else strip_special(doc)
        return self._insert(id, new_rev, body, path)

    def _insert(self, id, new_rev, body, path):
        try:
            info = self._byid[id]
        except KeyError:
            info = DocumentInfo({}, frozenset(), None)
        if new_rev in info.known_revs:
            return False  # already inserted

        rev_num = parse_rev(new_rev)[0]
        ancestry = {rev(rev_num - i, hash) for i, hash in enumerate(path)}
        # leafs that are now ancestors stop being leafs
        leafs = {r: leaf for r, leaf in info.leafs.items()
                 if r not in ancestry}
        leafs[new_rev] = (copy.deepcopy(body), path)

        # update the by seq index by first removing a previous reference to
        # the current document (if there is one), and then inserting a new one
        self.update_seq_sync += 1
        if info.last_update_seq is not None:
            del self._byseq[info.last_update_seq]
        self._byseq[self.update_seq_sync] = id
        self._byid[id] = DocumentInfo(leafs, info.known_revs | ancestry,
                                      self.update_seq_sync)
        self._updated()
        return True

    def _updated(self):
        """Overridden when continuous changes are supported"""

    # _local documents
    def read_local_sync(self, id):
        return copy.deepcopy(self._local.get(id))

    def write_local_sync(self, id, doc):
        if doc is None:
            self._local.pop(id, None)
        else:
            self._local[id] = copy.deepcopy(doc)

    # replication
    def changes_sync(self, since=None, limit=None):
        """Like CouchDB's _changes with style=all_docs"""

        seqs = self._byseq.irange(minimum=since, inclusive=(False, False))
        for seq in list(itertools.islice(seqs, limit)):
            id = self._byseq[seq]
            info = self._byid[id]
            leaf_revs = sorted(info.leafs, key=rev_sort_key, reverse=True)
            yield Change(id, seq, is_deleted(info), leaf_revs)

    def _has_changes_since(self, since):
        return self.update_seq_sync > (since or 0)

    def revs_diff_sync(self, revs):
        """Like CouchDB's _revs_diff: maps document ids to the revisions in
        'revs' this database doesn't know about. Fully known ids are left out.

        """
        result = {}
        for id, requested in revs.items():
            try:
                known = self._byid[id].known_revs
            except KeyError:
                known = frozenset()
            missing = [r for r in requested if r not in known]
            if missing:
                result[id] = {'missing': missing}
        return result


class InMemoryDatabase(SyncHostMixin, ContinuousChangesMixin,
                       SyncInMemoryDatabase):
    """A minimal in-memory implementation of a CouchDB-compatible database.

    The database does not keep the documents for non-leaf revisions for
    simplicity, which has the nice side-effect of effectively auto-compacting
    the database continously. This means you cannot use revisions as a history
    mechanism, though. (Which isn't recommended anyway.)

    Views and purging are not implemented, but everything needed by the
    helpers in initial.py and for replication is there.

    An in-memory database is (obviously) implemented synchronously. But such
    an interface does not make sense for databases that have to be reached
    through the network. To be compatible with those, we wrap the
    (synchronous) in-memory database with an asynchronous API. Note that
    because this class inherits from SyncInMemoryDatabase, you can still use
    the synchronous API, e.g. to fill a database in tests.

    Sync sessions (see sync()) require the database to be used as an async
    context manager.

    """
    async def __aenter__(self):
        await self._open_host()
        return self

    async def __aexit__(self, *exc_info):
        await self._close_host(*exc_info)

    @property
    def id(self):
        """For identification of this specific database during replication. For
        a (volatile) in-memory database, a random uuid is actually quite a
        reasonable choice.

        """
        return as_awaitable(self.id_sync)

    @property
    def update_seq(self):
        """Each database modification increases this. Starting at zero by
        convention.

        """
        return as_awaitable(self.update_seq_sync)

    async def info(self):
        return self.info_sync()

    async def all_docs(self, **opts):
        return self.all_docs_sync(**opts)

    async def find(self, query):
        return self.find_sync(query)

    async def get(self, id, **opts):
        return self.get_sync(id, **opts)

    async def put(self, doc):
        return self.put_sync(doc)

    async def remove(self, id, rev):
        return self.remove_sync(id, rev)

    async def changes(self, since=None, limit=None):
        for change in list(self.changes_sync(since, limit)):
            yield change

    async def revs_diff(self, revs):
        return self.revs_diff_sync(revs)

    async def bulk_get(self, requested):
        """Yields the requested (id, rev) leafs including their '_revisions'
        history. Leafs that don't exist (anymore) are yielded as NotFound
        instances.

        """
        for id, rev in requested:
            try:
                yield self.get_sync(id, rev=rev, revs=True)
            except NotFound as exc:
                yield exc

    async def write(self, docs):
        """Like CouchDB's _bulk_docs with new_edits=false. Yields an error row
        for every document that could not be written.

        """
        for doc in docs:
            try:
                self.write_sync(doc)
            except ChairSyncError as exc:
                yield {'id': doc.get('_id'), 'error': exc.error,
                       'reason': exc.reason}

    async def read_local(self, id):
        return self.read_local_sync(id)

    async def write_local(self, id, doc):
        self.write_local_sync(id, doc)


# document info helpers
def winning_rev(info):
    """Non-deleted leafs win from deleted ones. Then the highest revision
    number wins, and finally the highest revision hash.

    """
    return max(info.leafs, key=lambda r: (info.leafs[r][0] is not None,
                                          rev_sort_key(r)))


def is_deleted(info):
    body, _ = info.leafs[winning_rev(info)]
    return body is None


def to_doc(id, rev, body, path=None):
    """Reconstruct a CouchDB-compatible JSON document from the gathered
    information

    """
    doc = {'_id': id, '_rev': rev}
    if body is None:
        doc['_deleted'] = True
    else:
        doc.update(copy.deepcopy(body))
    if path is not None:
        doc['_revisions'] = {'start': parse_rev(rev)[0], 'ids': list(path)}
    return doc


def add_conflicts(doc, info):
    winner = winning_rev(info)
    conflicts = [r for r, (body, _) in info.leafs.items()
                 if body is not None and r != winner]
    if conflicts:
        doc['_conflicts'] = sorted(conflicts, key=rev_sort_key, reverse=True)


# _find helpers
def non_negative_int(query, name, default):
    value = query.get(name, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise BadRequest(f'{name} must be a non-negative integer')
    return value


def parse_sort(sort):
    if not isinstance(sort, list):
        raise BadRequest('sort must be an array')
    result = []
    for item in sort:
        if isinstance(item, str):
            result.append((tuple(item.split('.')), False))
        elif isinstance(item, dict) and len(item) == 1:
            (name, direction), = item.items()
            if direction not in ('asc', 'desc'):
                raise BadRequest('sort direction must be "asc" or "desc"')
            result.append((tuple(name.split('.')), direction == 'desc'))
        else:
            raise BadRequest(f'invalid sort field: {item!r}')
    return result


def sort_key(doc, path):
    value = field(doc, path)
    # missing fields sort first, collation keys are never empty
    return b'' if value is MISSING else collation_key(value)


def project(doc, fields):
    result = {}
    for name in fields:
        path = name.split('.')
        value = field(doc, path)
        if value is MISSING:
            continue
        target = result
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return result

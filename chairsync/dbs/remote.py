import httpx

import contextlib
from urllib.parse import quote

from ..datatypes import Change
from ..errors import NotFound, PreconditionFailed, error_for_status
from ..utils import as_json, parse_json_stream
from .shared import LONGPOLL_TIMEOUT, SyncHostMixin

# query parameters CouchDB expects as plain strings instead of JSON
RAW_PARAMS = {'feed', 'rev', 'since', 'stale', 'style', 'update'}


class HTTPDatabase(SyncHostMixin, httpx.AsyncClient):
    """Allows accessing remote databases with a CouchDB-compatible HTTP API
    through a high-level API similar to that of InMemoryDatabase. This makes it
    possible to use them as fallback source and to sync with them. Ideally, as
    much of the (messy) HTTP reality is hidden from the user as possible.

    Error responses are raised as the matching ChairSyncError subclass (e.g.
    NotFound for a 404). Transport problems (the server being unreachable)
    are raised by httpx, as subclasses of httpx.HTTPError.

    The additional 'create' and 'destroy' methods are handy for tests and
    setup, but not needed by the rest of chairsync.

    """
    def __init__(self, url, credentials=None, **kwargs):
        super().__init__(base_url=url, **kwargs)

        self._credentials = None
        if credentials:
            name, password = credentials
            self._credentials = {'name': name, 'password': password}

    async def __aenter__(self):
        await super().__aenter__()
        await self._open_host()
        return self

    async def __aexit__(self, *exc_info):
        await self._close_host(*exc_info)
        await super().__aexit__(*exc_info)

    async def create(self):
        """True if database creation succeeded, False otherwise."""

        try:
            await self._request('PUT', '')
        except PreconditionFailed:
            return False  # already exists
        return True

    async def destroy(self):
        """Handy, e.g. for testing, but not used by the rest of chairsync"""

        return (await self._request('DELETE', '')).json()

    async def info(self):
        return (await self._request('GET', '')).json()

    @property
    def update_seq(self):
        return self._get_update_seq()

    async def _get_update_seq(self):
        return (await self.info())['update_seq']

    @property
    def id(self):
        return self._get_id()

    async def _get_id(self):
        resp = await self._request('GET', self._server_url(''))
        base_id = resp.json().get('uuid', '')
        return base_id + str(self.base_url) + 'remote'

    # reading
    async def all_docs(self, **opts):
        keys = opts.pop('keys', None)
        params = encode_params(opts)
        if keys is None:
            resp = await self._request('GET', '_all_docs', params=params)
        else:
            resp = await self._request('POST', '_all_docs', params=params,
                                       json={'keys': keys})
        return resp.json()

    async def find(self, query):
        return (await self._request('POST', '_find', json=query)).json()

    async def get(self, id, **opts):
        params = encode_params(opts)
        return (await self._request('GET', doc_path(id), params=params)).json()

    # writing
    async def put(self, doc):
        if '_id' in doc:
            resp = await self._request('PUT', doc_path(doc['_id']), json=doc)
        else:
            resp = await self._request('POST', '', json=doc)
        return resp.json()

    async def remove(self, id, rev):
        resp = await self._request('DELETE', doc_path(id),
                                   params={'rev': rev})
        return resp.json()

    # _local documents
    async def read_local(self, id):
        try:
            doc = await self.get('_local/' + id)
        except NotFound:
            return None
        return {k: v for k, v in doc.items() if k not in ('_id', '_rev')}

    async def write_local(self, id, doc):
        path = doc_path('_local/' + id)
        # CouchDB requires the current revision, even for _local documents
        try:
            current_rev = (await self.get('_local/' + id))['_rev']
        except NotFound:
            current_rev = None

        if doc is None:
            if current_rev:
                await self._request('DELETE', path,
                                    params={'rev': current_rev})
            return
        body = dict(doc)
        if current_rev:
            body['_rev'] = current_rev
        await self._request('PUT', path, json=body)

    # replication
    async def changes(self, since=None, limit=None):
        params = {'style': 'all_docs'}
        if since is not None:
            params['since'] = since
        if limit is not None:
            params['limit'] = limit
        async with self._stream('GET', '_changes', params=params) as resp:
            async for c in parse_json_stream(resp.aiter_bytes(), 'items',
                                             'results.item'):
                deleted = c.get('deleted', False)
                leaf_revs = [item['rev'] for item in c['changes']]
                yield Change(c['id'], c['seq'], deleted, leaf_revs)

    async def wait_for_changes(self, since=None, timeout=LONGPOLL_TIMEOUT):
        """Blocks until there is a change after 'since', or 'timeout' seconds
        have passed.

        """
        params = {'feed': 'longpoll', 'limit': 1,
                  'timeout': int(timeout * 1000)}
        if since is not None:
            params['since'] = since
        # give the server some time to respond after its own timeout
        await self._request('GET', '_changes', params=params,
                            timeout=timeout + 10)

    async def revs_diff(self, revs):
        return (await self._request('POST', '_revs_diff', json=revs)).json()

    async def bulk_get(self, requested):
        """Yields the requested (id, rev) leafs including their '_revisions'
        history, or a NotFound instance for those that don't exist.

        """
        body = {'docs': [{'id': id, 'rev': rev} for id, rev in requested]}
        resp = await self._request('POST', '_bulk_get',
                                   params={'revs': 'true'}, json=body)
        for result in resp.json()['results']:
            for item in result['docs']:
                if 'ok' in item:
                    yield item['ok']
                else:
                    yield NotFound(item['error'])

    async def write(self, docs):
        """Like CouchDB's _bulk_docs with new_edits=false. Yields the error
        rows CouchDB sends back for documents that could not be written.

        """
        body = {'new_edits': False, 'docs': list(docs)}
        resp = await self._request('POST', '_bulk_docs', json=body)
        for row in resp.json():
            if 'error' in row:
                yield row

    # helpers
    def _server_url(self, path):
        return self.base_url.join('../' + path)

    async def _request(self, *args, **kwargs):
        await self._handle_log_in()
        resp = await self.request(*args, **kwargs)
        return self._checked_resp(resp)

    async def _handle_log_in(self):
        if self._credentials:
            resp = await self.post(self._server_url('_session'),
                                   json=self._credentials)
            self._checked_resp(resp)
            # only log in again after a failed attempt
            self._credentials = None

    def _checked_resp(self, resp):
        if resp.is_success:
            return resp
        try:
            body = resp.json()
        except ValueError:
            body = {'error': resp.reason_phrase, 'reason': resp.text}
        reason = body.get('reason') or body.get('error')
        raise error_for_status(resp.status_code)(reason, body)

    @contextlib.asynccontextmanager
    async def _stream(self, *args, **kwargs):
        await self._handle_log_in()
        async with self.stream(*args, **kwargs) as resp:
            if not resp.is_success:
                await resp.aread()
            yield self._checked_resp(resp)


def doc_path(id):
    for prefix in ('_design/', '_local/'):
        if id.startswith(prefix):
            return prefix + quote(id[len(prefix):], safe='')
    return quote(id, safe='')


def encode_params(opts):
    return {key: value if key in RAW_PARAMS else as_json(value)
            for key, value in opts.items() if value is not None}

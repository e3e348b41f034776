"""A CouchDB-compatible HTTP API for a single database, specified by
app.state.db or request.state.db. One of these can either be set manually
(when only a limited amount of databases needs to be exposed), or
programmatically by middleware. An example of that is given by __init__, which
builds a full CouchDB-compatible server out of in-memory databases.

Only the subset of the CouchDB API used by HTTPDatabase is implemented.

"""

from starlette.applications import Starlette
from starlette.endpoints import HTTPEndpoint
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

import functools
import json
import logging

from ..dbs.shared import LONGPOLL_TIMEOUT
from ..errors import BadRequest, ChairSyncError, NotFound
from ..utils import as_json, json_array_inner

logger = logging.getLogger(__name__)

ALL_DOCS_PARAMS = ('include_docs', 'attachments', 'conflicts', 'limit',
                   'skip', 'descending', 'start_key', 'end_key', 'startkey',
                   'endkey', 'inclusive_end')


class JSONResp(JSONResponse):
    """CouchDB ends its JSON bodies with a newline"""

    def render(self, content):
        return super().render(content) + b'\n'


def parse_query_arg(request, name, default=None):
    """Query parameters are JSON encoded, except for a few (like 'rev')
    that are passed as plain strings.

    """
    if name not in request.query_params:
        return default
    value = request.query_params[name]
    try:
        return json.loads(value)
    except ValueError:
        return value


async def error_response(request, exc):
    """Renders a ChairSyncError the way CouchDB renders errors."""

    body = {'error': exc.error, 'reason': exc.reason}
    return JSONResp(body, exc.status_code)


def get_db(request):
    try:
        return request.state.db
    except AttributeError:
        return request.app.state.db


def db_name(request):
    try:
        return request.state.db_name
    except AttributeError:
        return request.app.state.db_name


async def json_body(request):
    try:
        return await request.json()
    except ValueError as exc:
        raise BadRequest('invalid JSON body') from exc


class Database(HTTPEndpoint):
    async def get(self, request):
        result = await get_db(request).info()
        try:
            result['db_name'] = db_name(request)
        except AttributeError:
            pass
        return JSONResp(result)

    async def post(self, request):
        doc = await json_body(request)
        return JSONResp(await get_db(request).put(doc), 201)


# changes
async def changes(request):
    if parse_query_arg(request, 'style', default='main_only') != 'all_docs':
        logger.warning('style =/= all_docs, but we do that anyway!')
    since = parse_query_arg(request, 'since')
    limit = parse_query_arg(request, 'limit')
    feed = parse_query_arg(request, 'feed', default='normal')

    db = get_db(request)
    if feed == 'longpoll':
        timeout = parse_query_arg(request, 'timeout')
        timeout = LONGPOLL_TIMEOUT if timeout is None else timeout / 1000
        await db.wait_for_changes(since, timeout)
    elif feed != 'normal':
        raise BadRequest(f'unsupported feed: {feed}')

    generator = stream_changes(db.changes(since, limit), since)
    return StreamingResponse(generator, media_type='application/json')


def stream_changes(changes, since):
    info = {'last_seq': since or 0}
    changes = json_changes_and_last_seq(changes, info)
    gen_changes_footer = functools.partial(changes_footer, info)
    return json_array_inner('{"results": [\n', changes, gen_changes_footer)


async def json_changes_and_last_seq(changes, store):
    async for change in changes:
        yield change_row_json(change)
        store['last_seq'] = change.seq


def change_row_json(change):
    changes = [{'rev': rev} for rev in change.leaf_revs]
    row = {'seq': change.seq, 'id': change.id, 'changes': changes}
    if change.deleted:
        row['deleted'] = True
    return as_json(row)


def changes_footer(info):
    return f'\n], "last_seq": {as_json(info["last_seq"])}, "pending": 0}}\n'


# replication
async def revs_diff(request):
    return JSONResp(await get_db(request).revs_diff(await json_body(request)))


async def bulk_docs(request):
    req = await json_body(request)
    db = get_db(request)
    if req.get('new_edits', True):
        return JSONResp([await put_result(db, doc) for doc in req['docs']],
                        201)
    errors = [error async for error in db.write(req['docs'])]
    return JSONResp(errors, 201)


async def put_result(db, doc):
    try:
        return await db.put(doc)
    except ChairSyncError as exc:
        return {'id': doc.get('_id'), 'error': exc.error,
                'reason': exc.reason}


async def bulk_get(request):
    revs = parse_query_arg(request, 'revs', default=False)
    db = get_db(request)
    results = []
    for item in (await json_body(request))['docs']:
        try:
            doc = await db.get(item['id'], rev=item.get('rev'), revs=revs)
        except NotFound as exc:
            error = {'id': item['id'], 'rev': item.get('rev'),
                     'error': exc.error, 'reason': exc.reason}
            results.append({'id': item['id'], 'docs': [{'error': error}]})
        else:
            results.append({'id': item['id'], 'docs': [{'ok': doc}]})
    return JSONResp({'results': results})


# querying
class AllDocs(HTTPEndpoint):
    async def get(self, request):
        return await self._respond(request)

    async def post(self, request):
        keys = (await json_body(request)).get('keys')
        return await self._respond(request, keys=keys)

    async def _respond(self, request, **opts):
        for name in ALL_DOCS_PARAMS:
            value = parse_query_arg(request, name)
            if value is not None:
                opts[name] = value
        return JSONResp(await get_db(request).all_docs(**opts))


async def find(request):
    return JSONResp(await get_db(request).find(await json_body(request)))


# /doc
class DocumentEndpoint(HTTPEndpoint):
    def doc_id(self, request):
        """Overridden by subclasses"""

        return request.path_params['id']

    async def get(self, request):
        opts = {
            'rev': parse_query_arg(request, 'rev'),
            'revs': parse_query_arg(request, 'revs', default=False),
            'conflicts': parse_query_arg(request, 'conflicts', default=False),
        }
        doc = await get_db(request).get(self.doc_id(request), **opts)
        return JSONResp(doc, headers={'ETag': f'"{doc["_rev"]}"'})

    async def put(self, request):
        doc = {**await json_body(request), '_id': self.doc_id(request)}
        rev = parse_query_arg(request, 'rev')
        if rev is not None:
            doc['_rev'] = rev

        db = get_db(request)
        if not parse_query_arg(request, 'new_edits', default=True):
            errors = [error async for error in db.write([doc])]
            if errors:
                return JSONResp(errors[0], 400)
            return JSONResp({'ok': True, 'id': doc['_id'],
                             'rev': doc['_rev']}, 201)
        return JSONResp(await db.put(doc), 201)

    async def delete(self, request):
        doc = {'_id': self.doc_id(request), '_deleted': True}
        rev = parse_query_arg(request, 'rev')
        if rev is not None:
            doc['_rev'] = rev
        return JSONResp(await get_db(request).put(doc), 200)


class DesignDocumentEndpoint(DocumentEndpoint):
    def doc_id(self, request):
        return '_design/' + request.path_params['id']


class LocalDocumentEndpoint(DocumentEndpoint):
    def doc_id(self, request):
        return '_local/' + request.path_params['id']


def build_db_app(**opts):
    """Instead of just exporting an app, we allow you to create one yourself
    such that you can add middleware to set e.g. request.state.db

    This is the main entry point for this module.

    """
    handlers = opts.setdefault('exception_handlers', {})
    handlers.setdefault(ChairSyncError, error_response)
    return Starlette(routes=[
        Route('/', Database),
        Route('/_changes', changes),
        Route('/_revs_diff', revs_diff, methods=['POST']),
        Route('/_bulk_docs', bulk_docs, methods=['POST']),
        Route('/_bulk_get', bulk_get, methods=['POST']),
        Route('/_all_docs', AllDocs),
        Route('/_find', find, methods=['POST']),
        Route('/_design/{id}', DesignDocumentEndpoint),
        Route('/_local/{id}', LocalDocumentEndpoint),
        Route('/{id}', DocumentEndpoint),
    ], **opts)

"""A CouchDB-compatible HTTP server backed by in-memory databases.

Mostly useful as a stand-in for a real CouchDB server, e.g. as the remote side
of a sync in tests: HTTPDatabase can talk to it in-process using
httpx.ASGITransport(app=build_app()).

"""

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Mount, Route

import sortedcontainers

import uuid

from ..dbs import InMemoryDatabase
from ..errors import ChairSyncError, NotFound, PreconditionFailed
from .db import JSONResp, build_db_app, error_response

__version__ = "0.1"

SUCCESS = {
    "ok": True,
}

SESSION = {
    "ok": True,
    "userCtx": {"name": None, "roles": ["_admin"]},
}


async def root(request):
    return JSONResp({
        "chairsync": "Welcome!",
        "version": __version__,
        "uuid": request.app.state.server_id.hex,
        "features": [],
    })


async def put_db(request):
    dbname = request.path_params['db']
    if dbname in request.app.state.dbs:
        raise PreconditionFailed('The database could not be created, the '
                                 'file already exists.')
    request.app.state.dbs[dbname] = InMemoryDatabase()
    return JSONResp(SUCCESS, 201)


async def delete_db(request):
    dbname = request.path_params['db']
    if request.app.state.dbs.pop(dbname, None) is None:
        raise NotFound('Database does not exist.')
    return JSONResp(SUCCESS, 200)


async def all_dbs(request):
    return JSONResp(list(request.app.state.dbs.keys()))


async def session(request):
    return JSONResp(SESSION)


class DBLoaderMiddleware:
    """Automatically load the appropriate in-memory database into db_app's
    request.state.db, or return an error if there is no such database.

    """
    def __init__(self, app, dbs):
        self.db_app = app
        self.dbs = dbs

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            db_name = scope['path_params']['db']
            request_state = scope.setdefault('state', {})
            try:
                request_state['db'] = self.dbs[db_name]
                request_state['db_name'] = db_name
            except KeyError:
                exc = NotFound('Database does not exist.')
                response = JSONResp({'error': exc.error,
                                     'reason': exc.reason}, exc.status_code)
                await response(scope, receive, send)
                return
        await self.db_app(scope, receive, send)


def build_app(dbs=None):
    """Builds a server app. 'dbs' optionally maps database names to
    (pre-filled) databases.

    """
    # used to keep track of all the databases
    dbs = sortedcontainers.SortedDict(dbs or {})
    db_app = build_db_app(middleware=[Middleware(DBLoaderMiddleware,
                                                 dbs=dbs)])
    app = Starlette(routes=[
        Route('/', root),
        Route('/_all_dbs', all_dbs),
        Route('/_session', session, methods=['GET', 'POST']),
        Route('/{db}/', put_db, methods=['PUT']),
        Route('/{db}/', delete_db, methods=['DELETE']),
        Mount('/{db}', db_app),
    ], exception_handlers={ChairSyncError: error_response})

    app.state.dbs = dbs
    # for replication:
    app.state.server_id = uuid.uuid4()
    return app


app = build_app()

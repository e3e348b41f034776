import pytest

import httpx

from chairsync import InMemoryDatabase, build_app, build_db_app

pytestmark = pytest.mark.anyio


@pytest.fixture
async def client():
    db = InMemoryDatabase()
    db.put_sync({'_id': 'a'})
    app = build_app({'test': db})
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url='http://test') as client:
        yield client


async def test_server(client):
    resp = await client.get('/')
    assert resp.json()['chairsync'] == 'Welcome!'
    assert (await client.get('/_all_dbs')).json() == ['test']
    assert (await client.post('/_session', json={})).json()['ok']

    assert (await client.put('/other/')).status_code == 201
    assert (await client.get('/_all_dbs')).json() == ['other', 'test']
    resp = await client.put('/other/')
    assert resp.status_code == 412
    assert resp.json()['error'] == 'file_exists'
    assert (await client.delete('/other/')).json() == {'ok': True}
    assert (await client.delete('/other/')).status_code == 404


async def test_changes(client):
    resp = await client.get('/test/_changes', params={'style': 'all_docs'})
    body = resp.json()
    assert [row['id'] for row in body['results']] == ['a']
    assert body['last_seq'] == 1

    # nothing new, so this times out
    resp = await client.get('/test/_changes', params={
        'feed': 'longpoll',
        'since': '1',
        'timeout': '10',
    })
    assert resp.json() == {'results': [], 'last_seq': 1, 'pending': 0}

    resp = await client.get('/test/_changes', params={'feed': 'continuous'})
    assert resp.status_code == 400


async def test_errors(client):
    resp = await client.get('/test/unexisting')
    assert resp.status_code == 404
    assert resp.json() == {'error': 'not_found', 'reason': 'missing'}

    resp = await client.put('/test/a', json={})
    assert resp.status_code == 409
    assert resp.json()['error'] == 'conflict'

    resp = await client.post('/test/_find', content=b'{not json')
    assert resp.status_code == 400

    resp = await client.get('/unexisting/_all_docs')
    assert resp.status_code == 404
    assert resp.json()['reason'] == 'Database does not exist.'


async def test_bulk_docs(client):
    resp = await client.post('/test/_bulk_docs', json={'docs': [
        {'_id': 'b'},
        {'_id': 'a'},
    ]})
    results = resp.json()
    assert results[0]['ok']
    assert results[1]['error'] == 'conflict'


async def test_write_without_new_edits(client):
    resp = await client.put('/test/x', params={'new_edits': 'false'},
                            json={'_rev': '1-abc'})
    assert resp.json() == {'ok': True, 'id': 'x', 'rev': '1-abc'}
    resp = await client.put('/test/y', params={'new_edits': 'false'},
                            json={})
    assert resp.status_code == 400


async def test_single_database_app():
    db = InMemoryDatabase()
    app = build_db_app()
    app.state.db = db
    app.state.db_name = 'single'
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url='http://test') as client:
        resp = await client.post('/', json={'_id': 'doc', 'x': 1})
        assert resp.status_code == 201
        info = (await client.get('/')).json()
        # errors are rendered by the app's default handler
        missing = await client.get('/unexisting', params={'rev': '1-a'})
    assert info['db_name'] == 'single'
    assert info['doc_count'] == 1
    assert db.get_sync('doc')['x'] == 1
    assert missing.status_code == 404
    assert missing.json() == {'error': 'not_found', 'reason': 'missing'}
    assert missing.content.endswith(b'\n')

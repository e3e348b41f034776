import ijson

import contextlib
import hashlib
import json


# JSON helpers
def as_json(item):
    return json.dumps(item, separators=(",", ":"), sort_keys=True)


async def parse_json_stream(stream, type, prefix):
    results = ijson.sendable_list()
    coro = getattr(ijson, type + '_coro')(results, prefix, use_float=True)
    async for chunk in stream:
        with contextlib.suppress(StopIteration):
            coro.send(chunk)
        for result in results:
            yield result
        results.clear()
    coro.close()
    for result in results:
        yield result


async def json_array_inner(header, iterator, gen_footer):
    text = header
    async for i, item in aenumerate(iterator):
        if i > 0:
            yield text
            text = f',\n{item}'
        else:
            text = f'{text}{item}'
    yield f'{text}{gen_footer()}'


# async helpers
async def aenumerate(iterable):
    counter = 0
    async for item in iterable:
        yield counter, item
        counter += 1


async def to_list(asynciterable):
    return [x async for x in asynciterable]


async def as_awaitable(value):
    return value


# couchdb helpers
def rev(rev_num, rev_hash):
    return f'{rev_num}-{rev_hash}'


def parse_rev(rev):
    num, hash = rev.split('-', 1)
    return int(num), hash


def rev_sort_key(rev):
    """The CouchDB winner order for leafs: highest revision number first, with
    the revision hash as tie breaker.

    """
    return parse_rev(rev)


def new_rev_hash(id, prev_rev, is_deleted, body):
    hash = hashlib.md5()
    hash.update(json.dumps(id).encode('UTF-8'))
    hash.update(str(prev_rev).encode('UTF-8'))
    hash.update(str(is_deleted).encode('UTF-8'))
    hash.update(as_json(body).encode('UTF-8'))
    return hash.hexdigest()


def strip_special(doc):
    """Split off the underscore-prefixed metadata CouchDB adds to a document,
    keeping '_attachments' as it is document content.

    """
    return {key: value for key, value in doc.items()
            if not key.startswith('_') or key == '_attachments'}
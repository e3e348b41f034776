import typing


class Change(typing.NamedTuple):
    """A representation of a row in the _changes feed (style=all_docs)"""

    id: str
    seq: typing.Any
    deleted: bool
    leaf_revs: typing.List[str]


class SyncChange(typing.NamedTuple):
    """Passed to 'change' listeners whenever a replication batch moved
    documents. 'direction' is 'push' (local to remote) or 'pull' (remote to
    local), or None for a plain replicate() call.

    """
    direction: typing.Optional[str]
    docs: typing.List[dict]
    last_seq: typing.Any
    docs_read: int
    docs_written: int
    doc_write_failures: int


class DocumentInfo(typing.NamedTuple):
    """An internal representation used as value in the 'by id' index.

    'leafs' maps each leaf revision to a (body, path) tuple, where a body of
    None marks a deletion and path is a tuple of revision hashes, newest first.
    'known_revs' contains every revision ever seen, including ancestors.

    """
    leafs: typing.Dict[str, typing.Tuple[typing.Optional[dict], tuple]]
    known_revs: typing.Set[str]
    last_update_seq: int

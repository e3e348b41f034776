import typing


class DocumentStore(typing.Protocol):
    """What the helpers in initial.py need from a database. Implemented by
    InMemoryDatabase and HTTPDatabase, but a test double will do as well.

    The replicator additionally needs id, update_seq, changes(),
    wait_for_changes(), revs_diff(), bulk_get(), write(), read_local() and
    write_local(). See InMemoryDatabase for their documentation.

    """
    async def all_docs(self, **opts) -> dict:
        """Like CouchDB's _all_docs: {'rows': [{'id', 'key', 'value', 'doc'}]}
        Raises on failure.

        """

    async def find(self, query: dict) -> dict:
        """Like CouchDB's _find: {'docs': [...]}. Raises on failure."""

    async def get(self, id: str, **opts) -> dict:
        """Raises NotFound if there's no such document (or on failure)."""

    def sync(self, peer: 'DocumentStore', live: bool = False, **opts):
        """Starts a SyncSession in the background and returns it."""

from .memory import InMemoryDatabase, SyncInMemoryDatabase
from .remote import HTTPDatabase


__all__ = ('InMemoryDatabase', 'SyncInMemoryDatabase', 'HTTPDatabase')

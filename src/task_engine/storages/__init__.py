from .protocol import Storage
from .sqlalchemy import InMemoryStorage, SqlAlchemyStorage, storage_from_url

__all__ = ["Storage", "SqlAlchemyStorage", "InMemoryStorage", "storage_from_url"]

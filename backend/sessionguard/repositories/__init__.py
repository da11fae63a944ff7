from .base import SecurityStore
from .in_memory import InMemorySecurityStore
from .sqlalchemy_store import SqlAlchemySecurityStore

__all__ = ["SecurityStore", "InMemorySecurityStore", "SqlAlchemySecurityStore"]

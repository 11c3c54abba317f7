from pytest_flakewatch.infrastructure.persistence.store import PersistenceError, TestDataPersistence

__all__ = ["PersistenceError", "TestDataPersistence"]

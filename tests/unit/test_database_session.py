"""
Unit tests for engine and schema helpers.
"""
from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool

from carevault.database.session import create_db_engine, init_db


class TestDatabaseSession:

    def test_in_memory_sqlite_uses_static_pool(self):
        engine = create_db_engine("sqlite:///:memory:", echo=False)
        try:
            assert isinstance(engine.pool, StaticPool)
        finally:
            engine.dispose()

    def test_init_db_creates_schema(self):
        engine = create_db_engine("sqlite:///:memory:", echo=False)
        try:
            tables = init_db(engine)

            assert set(tables) >= {
                "users",
                "mfa_configurations",
                "user_sessions",
                "encryption_keys",
                "security_settings",
                "security_events",
            }
            indexes = {ix["name"] for ix in inspect(engine).get_indexes("encryption_keys")}
            assert "uq_encryption_keys_active_purpose" in indexes
        finally:
            engine.dispose()

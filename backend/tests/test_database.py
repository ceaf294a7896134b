"""
Tests for engine construction.
"""
import threading

from sqlalchemy import inspect, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from warranty_lifecycle.database import init_db, make_engine


class TestMakeEngine:

    def test_in_memory_sqlite_keeps_one_connection(self):
        engine = make_engine("sqlite://")
        init_db(engine)

        Session = sessionmaker(bind=engine)
        first, second = Session(), Session()
        first.execute(text("INSERT INTO users (id, email, username, password_hash, role) "
                           "VALUES ('u-1', 'a@example.com', 'a', 'x', 'admin')"))
        first.commit()

        assert isinstance(engine.pool, StaticPool)
        assert second.execute(text("SELECT count(*) FROM users")).scalar() == 1
        first.close()
        second.close()
        engine.dispose()

    def test_file_sqlite_usable_from_worker_thread(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'lifecycle.db'}")
        init_db(engine)
        tables = []

        def worker():
            tables.extend(inspect(engine).get_table_names())

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

        assert not isinstance(engine.pool, StaticPool)
        assert {"warranties", "annual_inspections", "users"} <= set(tables)
        engine.dispose()

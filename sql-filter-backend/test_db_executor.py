"""
Tests for the SQLAlchemy execution collaborator.

to_named_binds(), is_missing_column_error(), DatabaseExecutor against an
in-process SQLite engine.
"""

import unittest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from db_executor import DatabaseExecutor, to_named_binds, is_missing_column_error


def make_engine():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL, price REAL)"))
        conn.execute(
            text("INSERT INTO items (id, name, price) VALUES (:id, :name, :price)"),
            [{"id": i, "name": f"item {i}", "price": i * 1.5} for i in range(1, 6)],
        )
    return engine


class TestNamedBinds(unittest.TestCase):

    def test_positional_to_named(self):
        sql, params = to_named_binds("SELECT * FROM t WHERE a = $1 AND b IN ($2, $3)", ["x", 1, 2])
        self.assertEqual(sql, "SELECT * FROM t WHERE a = :p1 AND b IN (:p2, :p3)")
        self.assertEqual(params, {"p1": "x", "p2": 1, "p3": 2})

    def test_literals_untouched(self):
        sql, _ = to_named_binds("SELECT * FROM t WHERE a = $1 AND b = '$2'", ["x"])
        self.assertEqual(sql, "SELECT * FROM t WHERE a = :p1 AND b = '$2'")

    def test_colon_words_in_literals_escaped(self):
        sql, _ = to_named_binds("SELECT 'at :noon' AS v", [])
        self.assertEqual(sql, "SELECT 'at \\:noon' AS v")

    def test_missing_column_detection(self):
        self.assertTrue(is_missing_column_error('column "region" does not exist'))
        self.assertTrue(is_missing_column_error("(sqlite3.OperationalError) no such column: region"))
        self.assertTrue(is_missing_column_error("Unknown column 'region' in 'where clause'"))
        self.assertFalse(is_missing_column_error('relation "orders" does not exist'))


class TestDatabaseExecutor(unittest.TestCase):

    def setUp(self):
        self.executor = DatabaseExecutor(engine=make_engine())

    def tearDown(self):
        self.executor.dispose()

    def test_requires_url_or_engine(self):
        with self.assertRaises(ValueError):
            DatabaseExecutor()

    def test_execute_with_params(self):
        rows = self.executor.execute("SELECT id, name FROM items WHERE price >= $1 ORDER BY id", [6])
        self.assertEqual(rows, [{"id": 4, "name": "item 4"}, {"id": 5, "name": "item 5"}])

    def test_literal_colon_survives(self):
        self.assertEqual(self.executor.execute("SELECT 'at :noon' AS v"), [{"v": "at :noon"}])

    def test_row_cap(self):
        executor = DatabaseExecutor(engine=self.executor.engine, max_rows=2)
        self.assertEqual(len(executor.execute("SELECT * FROM items")), 2)

    def test_errors_propagate(self):
        with self.assertRaises(SQLAlchemyError):
            self.executor.execute("SELECT missing FROM items")

    def test_test_connection(self):
        result = self.executor.test_connection()
        self.assertTrue(result["success"])
        self.assertEqual(result["dialect"], "sqlite")

    def test_introspect_schema(self):
        schema = self.executor.introspect_schema()
        columns = {c["name"]: c for c in schema["tables"]["items"]["columns"]}
        self.assertEqual(set(columns), {"id", "name", "price"})
        self.assertFalse(columns["name"]["nullable"])


if __name__ == "__main__":
    unittest.main()

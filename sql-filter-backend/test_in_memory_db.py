"""
Tests for the in-memory query engine over uploaded rows.

InMemoryDatabase.add_table() / query(), InMemoryStoreRegistry - no DB required.
"""

import unittest
from datetime import date
from in_memory_db import (
    InMemoryDatabase,
    InMemoryStoreRegistry,
    TableNotFoundError,
    UnsupportedSyntaxError,
    InMemoryQueryError,
    infer_column_type,
)

PRODUCTS = [
    {"id": 1, "name": "Widget A", "price": 29.99, "category": "Electronics"},
    {"id": 2, "name": "Widget B", "price": 49.99, "category": "Electronics"},
    {"id": 3, "name": "Gadget X", "price": 19.99, "category": "Accessories"},
    {"id": 4, "name": "Gadget Y", "price": 39.99, "category": "Accessories"},
    {"id": 5, "name": "Device Z", "price": 99.99, "category": "Hardware"},
]


def column(schema, name):
    return next(c for c in schema.columns if c.name == name)


class TestAddTable(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()

    def test_adds_table(self):
        schema = self.db.add_table("users", [{"name": "Alice", "age": 30}, {"name": "Bob", "age": 25}])
        self.assertEqual(schema.name, "users")
        self.assertEqual(schema.row_count, 2)
        self.assertEqual(len(schema.columns), 2)

    def test_infers_types(self):
        schema = self.db.add_table("users", [{"name": "Alice", "age": 30, "score": 85.5, "active": True}])
        self.assertEqual(column(schema, "name").type, "text")
        self.assertEqual(column(schema, "age").type, "number")
        self.assertEqual(column(schema, "score").type, "number")
        self.assertEqual(column(schema, "active").type, "boolean")

    def test_nullable(self):
        schema = self.db.add_table("items", [{"name": "Alice", "value": 100}, {"name": "Bob", "value": None}])
        self.assertTrue(column(schema, "value").nullable)
        self.assertFalse(column(schema, "name").nullable)

    def test_empty_rows(self):
        schema = self.db.add_table("empty", [])
        self.assertEqual(schema.name, "empty")
        self.assertEqual(schema.row_count, 0)
        self.assertEqual(schema.columns, [])

    def test_explicit_column_names(self):
        schema = self.db.add_table("t", [{"a": 1, "b": 2}], column_names=["b"])
        self.assertEqual([c.name for c in schema.columns], ["b"])

    def test_replaces_existing(self):
        self.db.add_table("t", [{"a": 1}])
        self.db.add_table("t", [{"a": 1}, {"a": 2}])
        self.assertEqual(self.db.get_table_schema("t").row_count, 2)
        self.assertEqual(len(self.db.get_all_schemas()), 1)

    def test_remove_and_clear(self):
        self.db.add_table("t1", [{"a": 1}])
        self.db.add_table("t2", [{"b": 2}])
        self.assertTrue(self.db.remove_table("t1"))
        self.assertFalse(self.db.remove_table("t1"))
        self.assertIsNone(self.db.get_table_schema("t1"))
        self.db.clear()
        self.assertTrue(self.db.is_empty())

    def test_get_table_data(self):
        self.db.add_table("test", [{"id": 1}, {"id": 2}])
        self.assertEqual(len(self.db.get_table_data("test")), 2)
        self.assertIsNone(self.db.get_table_data("nonexistent"))

    def test_get_all_schemas(self):
        self.db.add_table("table1", [{"a": 1}])
        self.db.add_table("table2", [{"b": 2}])
        self.assertEqual(len(self.db.get_all_schemas()), 2)


class TestInferColumnType(unittest.TestCase):

    def test_numeric_strings(self):
        self.assertEqual(infer_column_type(["1", "2.5", "-3"]), "number")

    def test_boolean_strings(self):
        self.assertEqual(infer_column_type(["true", "false", "true"]), "boolean")

    def test_dates(self):
        self.assertEqual(infer_column_type(["2024-01-01", "2024-02-15"]), "date")
        self.assertEqual(infer_column_type(["1/15/2024", "12/31/2023"]), "date")
        self.assertEqual(infer_column_type([date(2024, 1, 1)]), "date")

    def test_all_null_is_unknown(self):
        self.assertEqual(infer_column_type([None, "", None]), "unknown")

    def test_majority_threshold(self):
        self.assertEqual(infer_column_type(["1", "2", "3", "4", "x"]), "number")
        self.assertEqual(infer_column_type(["1", "2", "3", "x", "y"]), "text")


class TestSelect(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()
        self.db.add_table("products", PRODUCTS)

    def test_select_star(self):
        result = self.db.query("SELECT * FROM products")
        self.assertEqual(len(result.rows), 5)
        self.assertEqual(result.columns, ["id", "name", "price", "category"])

    def test_specific_columns(self):
        result = self.db.query("SELECT name, price FROM products")
        self.assertEqual(result.columns, ["name", "price"])
        self.assertEqual(set(result.rows[0]), {"name", "price"})

    def test_column_alias(self):
        result = self.db.query("SELECT name AS product FROM products LIMIT 1")
        self.assertEqual(result.columns, ["product"])
        self.assertEqual(result.rows, [{"product": "Widget A"}])

    def test_case_insensitive_table_and_keywords(self):
        self.assertEqual(len(self.db.query("SELECT * FROM PRODUCTS").rows), 5)
        self.assertEqual(len(self.db.query("select * from products where id > 3").rows), 2)

    def test_trailing_semicolon(self):
        self.assertEqual(len(self.db.query("SELECT * FROM products;").rows), 5)

    def test_unknown_column_reads_as_none(self):
        result = self.db.query("SELECT missing FROM products LIMIT 1")
        self.assertEqual(result.rows, [{"missing": None}])


class TestWhere(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()
        self.db.add_table("products", PRODUCTS)

    def count(self, where):
        return len(self.db.query(f"SELECT * FROM products WHERE {where}").rows)

    def test_comparisons(self):
        self.assertEqual(self.count("category = 'Electronics'"), 2)
        self.assertEqual(self.count("price > 40"), 2)
        self.assertEqual(self.count("price < 30"), 2)
        self.assertEqual(self.count("price >= 49.99"), 2)
        self.assertEqual(self.count("price <= 29.99"), 2)
        self.assertEqual(self.count("category != 'Electronics'"), 3)
        self.assertEqual(self.count("category <> 'Electronics'"), 3)

    def test_like(self):
        self.assertEqual(self.count("name LIKE 'Widget%'"), 2)
        self.assertEqual(self.count("name LIKE 'widget _'"), 2)
        self.assertEqual(self.count("name LIKE '%Z'"), 1)

    def test_in(self):
        self.assertEqual(self.count("category IN ('Electronics', 'Hardware')"), 3)
        self.assertEqual(self.count("id IN (1, 3)"), 2)

    def test_between(self):
        self.assertEqual(self.count("price BETWEEN 20 AND 50"), 3)

    def test_and(self):
        rows = self.db.query("SELECT * FROM products WHERE category = 'Electronics' AND price > 30").rows
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["name"], "Widget B")

    def test_between_combined_with_and(self):
        self.assertEqual(self.count("price BETWEEN 20 AND 50 AND category = 'Accessories'"), 1)

    def test_and_inside_literal(self):
        self.db.add_table("notes", [{"text": "salt and pepper"}, {"text": "salt"}])
        rows = self.db.query("SELECT * FROM notes WHERE text = 'salt and pepper'").rows
        self.assertEqual(rows, [{"text": "salt and pepper"}])

    def test_doubled_quote_unescaped(self):
        self.db.add_table("people", [{"name": "O'Brien"}, {"name": "Smith"}])
        rows = self.db.query("SELECT * FROM people WHERE name = 'O''Brien'").rows
        self.assertEqual(rows, [{"name": "O'Brien"}])

    def test_none_never_matches(self):
        self.db.add_table("t", [{"v": None}, {"v": 5}])
        self.assertEqual(len(self.db.query("SELECT * FROM t WHERE v > 1").rows), 1)
        self.assertEqual(len(self.db.query("SELECT * FROM t WHERE v LIKE '%'").rows), 1)
        self.assertEqual(len(self.db.query("SELECT * FROM t WHERE v = 5").rows), 1)

    def test_date_strings_compare_lexically(self):
        self.db.add_table("orders", [
            {"date": "2024-01-05", "amount": 10},
            {"date": "2024-02-10", "amount": 20},
            {"date": "2024-03-15", "amount": 30},
        ])
        rows = self.db.query(
            "SELECT * FROM orders WHERE date >= '2024-02-01' AND date <= '2024-12-31'"
        ).rows
        self.assertEqual([r["amount"] for r in rows], [20, 30])


class TestOrderAndLimit(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()
        self.db.add_table("products", [
            {"id": 3, "name": "C Product", "price": 30},
            {"id": 1, "name": "A Product", "price": 10},
            {"id": 2, "name": "B Product", "price": 20},
        ])
        self.db.add_table("items", [{"id": i} for i in range(1, 6)])

    def test_order_asc(self):
        rows = self.db.query("SELECT * FROM products ORDER BY name ASC").rows
        self.assertEqual(rows[0]["name"], "A Product")
        self.assertEqual(rows[2]["name"], "C Product")

    def test_order_desc(self):
        rows = self.db.query("SELECT * FROM products ORDER BY price DESC").rows
        self.assertEqual([r["price"] for r in rows], [30, 20, 10])

    def test_order_default_ascending(self):
        rows = self.db.query("SELECT * FROM products ORDER BY id").rows
        self.assertEqual([r["id"] for r in rows], [1, 2, 3])

    def test_nulls_sort_last(self):
        self.db.add_table("t", [{"v": None}, {"v": 2}, {"v": 1}])
        self.assertEqual([r["v"] for r in self.db.query("SELECT * FROM t ORDER BY v").rows], [1, 2, None])
        self.assertEqual([r["v"] for r in self.db.query("SELECT * FROM t ORDER BY v DESC").rows], [2, 1, None])

    def test_limit(self):
        self.assertEqual(len(self.db.query("SELECT * FROM items LIMIT 3").rows), 3)
        self.assertEqual(len(self.db.query("SELECT * FROM items LIMIT 100").rows), 5)

    def test_order_then_limit(self):
        rows = self.db.query("SELECT name FROM products ORDER BY price DESC LIMIT 1").rows
        self.assertEqual(rows, [{"name": "C Product"}])


class TestAggregates(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()
        self.db.add_table("numbers", [{"value": v} for v in (10, 20, 30, 40, 50)])

    def test_count_sum_avg(self):
        self.assertEqual(self.db.query("SELECT COUNT(*) as count FROM numbers").rows[0]["count"], 5)
        self.assertEqual(self.db.query("SELECT SUM(value) as total FROM numbers").rows[0]["total"], 150)
        self.assertEqual(self.db.query("SELECT AVG(value) as average FROM numbers").rows[0]["average"], 30)

    def test_multiple(self):
        row = self.db.query(
            "SELECT COUNT(*) as n, SUM(value) as sum, AVG(value) as avg, "
            "MIN(value) as min, MAX(value) as max FROM numbers"
        ).rows[0]
        self.assertEqual(row, {"n": 5, "sum": 150, "avg": 30, "min": 10, "max": 50})

    def test_unaliased_key(self):
        result = self.db.query("SELECT COUNT(*) FROM numbers")
        self.assertEqual(result.rows, [{"COUNT(*)": 5}])
        self.assertEqual(result.columns, ["COUNT(*)"])

    def test_bare_column_without_group_by_not_reported(self):
        self.db.add_table("t", [{"category": "A"}, {"category": "B"}])
        result = self.db.query("SELECT category, COUNT(*) AS n FROM t")
        self.assertEqual(result.rows, [{"n": 2}])
        self.assertEqual(result.columns, ["n"])
        self.assertEqual(result.columns, list(result.rows[0]))

    def test_aggregate_with_where(self):
        row = self.db.query("SELECT SUM(value) as total FROM numbers WHERE value > 25").rows[0]
        self.assertEqual(row["total"], 120)

    def test_empty_input(self):
        row = self.db.query(
            "SELECT COUNT(*) as n, SUM(value) as s, AVG(value) as a, MIN(value) as lo, MAX(value) as hi "
            "FROM numbers WHERE value > 1000"
        ).rows[0]
        self.assertEqual(row, {"n": 0, "s": 0, "a": 0, "lo": None, "hi": None})

    def test_count_column_skips_none(self):
        self.db.add_table("t", [{"v": 1}, {"v": None}, {"v": 3}])
        self.assertEqual(self.db.query("SELECT COUNT(v) as c FROM t").rows[0]["c"], 2)

    def test_min_over_non_numeric(self):
        self.db.add_table("t", [{"v": "abc"}, {"v": 3}])
        self.assertIsNone(self.db.query("SELECT MIN(v) as m FROM t").rows[0]["m"])


class TestGroupBy(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()
        self.db.add_table("sales", [
            {"region": "North", "amount": 100},
            {"region": "North", "amount": 200},
            {"region": "South", "amount": 150},
            {"region": "South", "amount": 250},
            {"region": "South", "amount": 100},
        ])

    def by_region(self, sql):
        return {row["region"]: row for row in self.db.query(sql).rows}

    def test_count(self):
        groups = self.by_region("SELECT region, COUNT(*) as count FROM sales GROUP BY region")
        self.assertEqual(len(groups), 2)
        self.assertEqual(groups["North"]["count"], 2)
        self.assertEqual(groups["South"]["count"], 3)

    def test_sum_avg_min_max(self):
        groups = self.by_region(
            "SELECT region, SUM(amount) as total, AVG(amount) as avg, "
            "MIN(amount) as min, MAX(amount) as max FROM sales GROUP BY region"
        )
        self.assertEqual(groups["North"]["total"], 300)
        self.assertEqual(groups["South"]["total"], 500)
        self.assertEqual(groups["North"]["avg"], 150)
        self.assertAlmostEqual(groups["South"]["avg"], 166.67, places=1)
        self.assertEqual(groups["South"]["min"], 100)
        self.assertEqual(groups["South"]["max"], 250)

    def test_first_seen_group_order_and_columns(self):
        result = self.db.query("SELECT region, SUM(amount) AS total FROM sales GROUP BY region")
        self.assertEqual(result.columns, ["region", "total"])
        self.assertEqual(result.rows, [
            {"region": "North", "total": 300},
            {"region": "South", "total": 500},
        ])

    def test_group_with_where_order_limit(self):
        rows = self.db.query(
            "SELECT region, SUM(amount) AS total FROM sales WHERE amount >= 150 "
            "GROUP BY region ORDER BY total DESC LIMIT 1"
        ).rows
        self.assertEqual(rows, [{"region": "South", "total": 400}])

    def test_group_without_aggregates(self):
        rows = self.db.query("SELECT region FROM sales GROUP BY region").rows
        self.assertEqual(rows, [{"region": "North"}, {"region": "South"}])

    def test_category_totals(self):
        self.db.add_table("sales", [
            {"category": "A", "amount": 10},
            {"category": "B", "amount": 7},
            {"category": "A", "amount": 5},
        ])
        rows = self.db.query("SELECT category, SUM(amount) AS total FROM sales GROUP BY category").rows
        self.assertEqual(rows, [{"category": "A", "total": 15}, {"category": "B", "total": 7}])


class TestErrors(unittest.TestCase):

    def setUp(self):
        self.db = InMemoryDatabase()

    def test_unknown_table_on_empty_store(self):
        with self.assertRaises(TableNotFoundError) as ctx:
            self.db.query("SELECT * FROM missing")
        self.assertEqual(str(ctx.exception), 'Table "missing" not found. Available tables: none')
        self.assertEqual(ctx.exception.kind, "TABLE_NOT_FOUND")

    def test_unknown_table_lists_available(self):
        self.db.add_table("orders", [{"id": 1}])
        with self.assertRaisesRegex(TableNotFoundError, 'Table "nonexistent" not found. Available tables: orders'):
            self.db.query("SELECT * FROM nonexistent")

    def test_invalid_sql(self):
        for sql in ("INVALID SQL", "DELETE FROM t", "SELECT * FROM a JOIN b ON a.id = b.id", ""):
            with self.subTest(sql=sql):
                with self.assertRaises(UnsupportedSyntaxError) as ctx:
                    self.db.query(sql)
                self.assertIn("Only SELECT queries are supported", str(ctx.exception))
                self.assertIsInstance(ctx.exception, InMemoryQueryError)


class TestStoreRegistry(unittest.TestCase):

    def test_sessions_are_isolated(self):
        registry = InMemoryStoreRegistry()
        registry.get("a").add_table("t", [{"x": 1}])
        self.assertTrue(registry.get("b").is_empty())
        self.assertIs(registry.get("a"), registry.get("a"))
        self.assertEqual(sorted(registry.session_ids()), ["a", "b"])

    def test_reset(self):
        registry = InMemoryStoreRegistry()
        store = registry.get()
        store.add_table("t", [{"x": 1}])
        self.assertTrue(registry.reset())
        self.assertFalse(registry.reset())
        self.assertTrue(store.is_empty())
        self.assertTrue(registry.get().is_empty())

    def test_reset_all(self):
        registry = InMemoryStoreRegistry()
        registry.get("a").add_table("t", [{"x": 1}])
        registry.get("b").add_table("t", [{"x": 1}])
        registry.reset_all()
        self.assertEqual(registry.session_ids(), [])


if __name__ == "__main__":
    unittest.main()

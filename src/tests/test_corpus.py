import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path

from minipr.errors import DataConsistencyError
from minipr.storage.corpus import ContentType, InMemoryCorpusStore, Link, SQLiteCorpusStore


def build_db(path: Path) -> None:
    conn = sqlite3.connect(path)
    SQLiteCorpusStore.create_schema(conn)
    conn.executemany(
        "INSERT INTO Paragraph VALUES (?, ?)",
        [("p1", "graph ranking"), ("p2", "pasta recipes"), ("p3", None)],
    )
    conn.executemany("INSERT INTO Page VALUES (?, ?)", [("A", "Graph"), ("B", "PageRank"), ("C", "Pasta")])
    conn.executemany(
        "INSERT INTO ParaLink VALUES (?, ?, ?, ?)",
        [("p1", "A", "graph", "Intro"), ("p1", "B", "pagerank", "Intro"), ("p2", "C", None, "Food")],
    )
    conn.executemany("INSERT INTO PageLink VALUES (?, ?)", [("A", "B"), ("C", "A")])
    conn.executemany("INSERT INTO PageCategory VALUES (?, ?)", [("A", "Mathematics"), ("A", "Graphs")])
    conn.commit()
    conn.close()


class TestSQLiteCorpusStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Path(self.tmp.name) / "corpus.sqlite"
        build_db(self.db)
        self.store = SQLiteCorpusStore(self.db)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_fetch_paragraphs_with_links(self):
        paragraphs = self.store.fetch_paragraphs(["p2", "p1", "missing"])
        self.assertEqual([p.id for p in paragraphs], ["p2", "p1"])
        p1 = paragraphs[1]
        self.assertEqual(p1.text, "graph ranking")
        self.assertEqual({link.target for link in p1.page_outlinks}, {"A", "B"})
        self.assertEqual(paragraphs[0].page_outlinks, (Link("p2", "C", ""),))

    def test_fetch_paragraphs_without_links(self):
        (p1,) = self.store.fetch_paragraphs(["p1"], retrieve_links=False)
        self.assertEqual(p1.page_outlinks, ())

    def test_missing_text_is_inconsistent(self):
        with self.assertRaises(DataConsistencyError):
            self.store.fetch_paragraphs(["p3"])

    def test_fetch_pages_derives_inlinks(self):
        pages = {p.id: p for p in self.store.fetch_pages(["A", "B", "Z"])}
        self.assertEqual(set(pages), {"A", "B"})
        a = pages["A"]
        self.assertEqual(a.name, "Graph")
        self.assertEqual([(l.source, l.target) for l in a.page_outlinks], [("A", "B")])
        self.assertEqual([(l.source, l.target) for l in a.page_inlinks], [("C", "A")])
        self.assertEqual([l.source for l in a.paragraph_inlinks], ["p1"])
        self.assertEqual(set(a.categories), {"Mathematics", "Graphs"})
        self.assertEqual(len(list(a.links())), 3)

    def test_fetch_by_content_type(self):
        self.assertEqual([p.id for p in self.store.fetch(ContentType.ENTITY, ["C"])], ["C"])
        self.assertEqual([p.id for p in self.store.fetch(ContentType.PASSAGE, ["p1"])], ["p1"])
        self.assertEqual(self.store.fetch(ContentType.PASSAGE, []), [])

    def test_iter_texts(self):
        texts = dict(self.store.iter_texts(ContentType.PASSAGE))
        self.assertEqual(texts, {"p1": "graph ranking", "p2": "pasta recipes", "p3": ""})
        self.assertEqual(dict(self.store.iter_texts(ContentType.ENTITY))["B"], "PageRank")

    def test_large_batches_are_chunked(self):
        ids = ["p1"] + [f"x{i}" for i in range(2500)]
        self.assertEqual([p.id for p in self.store.fetch_paragraphs(ids)], ["p1"])

    def test_connection_per_thread(self):
        results = {}

        def worker(name):
            results[name] = [p.id for p in self.store.fetch_paragraphs(["p1", "p2"])]

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(list(results.values()), [["p1", "p2"]] * 4)
        self.assertEqual(self.store.connection_count(), 4)
        self.assertEqual(self.store.release_idle_connections(), 4)
        self.assertEqual(self.store.connection_count(), 0)
        # A live thread keeps its connection.
        self.store.fetch_paragraphs(["p1"])
        self.assertEqual(self.store.release_idle_connections(), 0)
        self.assertEqual(self.store.connection_count(), 1)

    def test_missing_database(self):
        with self.assertRaises(FileNotFoundError):
            SQLiteCorpusStore(Path(self.tmp.name) / "nope.sqlite")


class TestInMemoryCorpusStore(unittest.TestCase):
    def test_reverse_links(self):
        store = InMemoryCorpusStore()
        store.add_paragraph("p1", "text", page_outlinks=["A"])
        store.add_page("A", "Graph", categories=["Maths"])
        store.add_page("B", "PageRank")
        store.add_page_link("B", "A")

        (a,) = store.fetch_pages(["A"])
        self.assertEqual(a.paragraph_inlinks, (Link("p1", "A"),))
        self.assertEqual(a.page_inlinks, (Link("B", "A"),))
        self.assertEqual(a.page_outlinks, ())
        self.assertEqual(a.categories, ("Maths",))

        store.add_page_link("A", "B")
        (a,) = store.fetch_pages(["A"])
        self.assertEqual(a.page_outlinks, (Link("A", "B"),))
        (bare,) = store.fetch_pages(["A"], retrieve_links=False)
        self.assertEqual(bare.page_inlinks, ())


if __name__ == "__main__":
    unittest.main()

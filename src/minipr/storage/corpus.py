"""
Corpus store: paragraphs, pages and the directed links between them.

Two backends share one interface:
- SQLiteCorpusStore reads the corpus database (tables Paragraph, Page,
  ParaLink, PageLink, PageCategory). Each thread gets its own read-only
  connection, the store itself holds no mutable query state.
- InMemoryCorpusStore keeps the same rows in dictionaries; used for tests and
  small experiments.

Links are stored once, in their natural direction. Inlink views (page inlinks,
paragraph inlinks) are derived on demand from the directed link lists.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

from minipr.errors import DataConsistencyError

logger = logging.getLogger(__name__)

# SQLite's default bound on host parameters per statement.
_SQLITE_MAX_VARS = 900


class ContentType(str, Enum):
    PASSAGE = "passage"
    ENTITY = "entity"


@dataclass(frozen=True)
class Link:
    """Directed link between two corpus items."""

    source: str
    target: str
    anchor_text: str = ""


@dataclass(frozen=True)
class Paragraph:
    id: str
    text: str
    page_outlinks: tuple[Link, ...] = ()


@dataclass(frozen=True)
class Page:
    id: str
    name: str
    page_inlinks: tuple[Link, ...] = ()
    page_outlinks: tuple[Link, ...] = ()
    paragraph_inlinks: tuple[Link, ...] = ()
    categories: tuple[str, ...] = ()

    def links(self) -> Iterator[Link]:
        yield from self.paragraph_inlinks
        yield from self.page_inlinks
        yield from self.page_outlinks


def _chunked(ids: list[str], size: int = _SQLITE_MAX_VARS) -> Iterator[list[str]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


class CorpusStore(ABC):
    """Read-only view of the corpus used to enrich candidates."""

    @abstractmethod
    def fetch_paragraphs(self, ids: Iterable[str], retrieve_links: bool = True) -> list[Paragraph]:
        """Batch fetch. Ids without a row are silently absent from the result."""

    @abstractmethod
    def fetch_pages(self, ids: Iterable[str], retrieve_links: bool = True) -> list[Page]:
        """Batch fetch. Ids without a row are silently absent from the result."""

    @abstractmethod
    def iter_texts(self, content_type: ContentType) -> Iterator[tuple[str, str]]:
        """Yields (id, text) for every item of the given content type."""

    def fetch(self, content_type: ContentType, ids: Iterable[str]) -> list[Paragraph] | list[Page]:
        if content_type == ContentType.PASSAGE:
            return self.fetch_paragraphs(ids)
        return self.fetch_pages(ids)

    def release_idle_connections(self) -> int:
        """Frees per-thread resources held for threads that have exited; returns how many."""
        return 0

    def close(self) -> None:
        pass


class InMemoryCorpusStore(CorpusStore):
    def __init__(self):
        self._paragraphs: dict[str, tuple[str, list[Link]]] = {}
        self._pages: dict[str, tuple[str, list[str]]] = {}
        self._page_links: list[Link] = []
        self._reverse: dict[str, dict[str, list[Link]]] | None = None

    def add_paragraph(self, pid: str, text: str, page_outlinks: Iterable[str] = ()) -> None:
        links = [Link(pid, target) for target in page_outlinks]
        self._paragraphs[pid] = (text, links)
        self._reverse = None

    def add_page(self, pid: str, name: str, categories: Iterable[str] = ()) -> None:
        self._pages[pid] = (name, list(categories))

    def add_page_link(self, source: str, target: str) -> None:
        self._page_links.append(Link(source, target))
        self._reverse = None

    def _reverse_index(self) -> dict[str, dict[str, list[Link]]]:
        """Derives inlink and outlink lists keyed by page id."""
        if self._reverse is None:
            page_in: dict[str, list[Link]] = defaultdict(list)
            page_out: dict[str, list[Link]] = defaultdict(list)
            para_in: dict[str, list[Link]] = defaultdict(list)
            for link in self._page_links:
                page_out[link.source].append(link)
                page_in[link.target].append(link)
            for _, links in self._paragraphs.values():
                for link in links:
                    para_in[link.target].append(link)
            self._reverse = {"page_in": page_in, "page_out": page_out, "para_in": para_in}
        return self._reverse

    def fetch_paragraphs(self, ids: Iterable[str], retrieve_links: bool = True) -> list[Paragraph]:
        out = []
        for pid in dict.fromkeys(ids):
            row = self._paragraphs.get(pid)
            if row is None:
                continue
            text, links = row
            out.append(Paragraph(pid, text, tuple(links) if retrieve_links else ()))
        return out

    def fetch_pages(self, ids: Iterable[str], retrieve_links: bool = True) -> list[Page]:
        rev = self._reverse_index() if retrieve_links else None
        out = []
        for pid in dict.fromkeys(ids):
            row = self._pages.get(pid)
            if row is None:
                continue
            name, cats = row
            if rev is None:
                out.append(Page(pid, name, categories=tuple(cats)))
                continue
            out.append(
                Page(
                    pid,
                    name,
                    page_inlinks=tuple(rev["page_in"].get(pid, ())),
                    page_outlinks=tuple(rev["page_out"].get(pid, ())),
                    paragraph_inlinks=tuple(rev["para_in"].get(pid, ())),
                    categories=tuple(cats),
                )
            )
        return out

    def iter_texts(self, content_type: ContentType) -> Iterator[tuple[str, str]]:
        if content_type == ContentType.PASSAGE:
            for pid, (text, _) in self._paragraphs.items():
                yield pid, text
        else:
            for pid, (name, _) in self._pages.items():
                yield pid, name


class SQLiteCorpusStore(CorpusStore):
    """
    Corpus database reader.

    Schema:
        Paragraph(paragraphid PRIMARY KEY, paratext)
        Page(pageid PRIMARY KEY, pagename)
        ParaLink(paragraphid, pageid, anchorText, sectionHeading)
        PageLink(pageIdFrom, pageIdTo)
        PageCategory(pageid, category)
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        if not self.db_path.exists():
            raise FileNotFoundError(f"Corpus database not found: {self.db_path}")
        self._local = threading.local()
        # (owning thread, connection)
        self._connections: list[tuple[threading.Thread, sqlite3.Connection]] = []
        self._lock = threading.Lock()
        logger.info(f"Using corpus database at {self.db_path}")

    @classmethod
    def from_config(cls, cfg) -> "SQLiteCorpusStore":
        return cls(cfg.CORPUS.DB_PATH)

    @staticmethod
    def create_schema(conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS Paragraph (paragraphid TEXT PRIMARY KEY, paratext TEXT);
            CREATE TABLE IF NOT EXISTS Page (pageid TEXT PRIMARY KEY, pagename TEXT);
            CREATE TABLE IF NOT EXISTS ParaLink (paragraphid TEXT, pageid TEXT, anchorText TEXT,
                                                 sectionHeading TEXT);
            CREATE TABLE IF NOT EXISTS PageLink (pageIdFrom TEXT, pageIdTo TEXT);
            CREATE TABLE IF NOT EXISTS PageCategory (pageid TEXT, category TEXT);
            CREATE INDEX IF NOT EXISTS idx_paralink_para ON ParaLink(paragraphid);
            CREATE INDEX IF NOT EXISTS idx_paralink_page ON ParaLink(pageid);
            CREATE INDEX IF NOT EXISTS idx_pagelink_from ON PageLink(pageIdFrom);
            CREATE INDEX IF NOT EXISTS idx_pagelink_to ON PageLink(pageIdTo);
            """
        )

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            uri = f"file:{self.db_path.resolve()}?mode=ro"
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            self._local.conn = conn
            with self._lock:
                self._connections.append((threading.current_thread(), conn))
        return conn

    def _select_in(self, sql: str, ids: list[str]) -> Iterator[tuple]:
        conn = self._conn()
        for chunk in _chunked(ids):
            marks = ",".join("?" * len(chunk))
            try:
                yield from conn.execute(sql.format(marks=marks), chunk)
            except sqlite3.Error as e:
                raise DataConsistencyError(f"Corpus query failed: {e}") from e

    def fetch_paragraphs(self, ids: Iterable[str], retrieve_links: bool = True) -> list[Paragraph]:
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return []
        texts = dict(self._select_in("SELECT paragraphid, paratext FROM Paragraph WHERE paragraphid IN ({marks})", id_list))
        links: dict[str, list[Link]] = defaultdict(list)
        if retrieve_links:
            rows = self._select_in(
                "SELECT paragraphid, pageid, anchorText FROM ParaLink WHERE paragraphid IN ({marks})", id_list
            )
            for para_id, page_id, anchor in rows:
                links[para_id].append(Link(para_id, page_id, anchor or ""))
        out = []
        for pid in id_list:
            if pid not in texts:
                continue
            text = texts[pid]
            if text is None:
                raise DataConsistencyError(f"Paragraph {pid} has no text")
            out.append(Paragraph(pid, text, tuple(links.get(pid, ()))))
        return out

    def fetch_pages(self, ids: Iterable[str], retrieve_links: bool = True) -> list[Page]:
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return []
        names = dict(self._select_in("SELECT pageid, pagename FROM Page WHERE pageid IN ({marks})", id_list))
        page_in: dict[str, list[Link]] = defaultdict(list)
        page_out: dict[str, list[Link]] = defaultdict(list)
        para_in: dict[str, list[Link]] = defaultdict(list)
        cats: dict[str, list[str]] = defaultdict(list)
        if retrieve_links:
            for src, dst in self._select_in("SELECT pageIdFrom, pageIdTo FROM PageLink WHERE pageIdFrom IN ({marks})", id_list):
                page_out[src].append(Link(src, dst))
            for src, dst in self._select_in("SELECT pageIdFrom, pageIdTo FROM PageLink WHERE pageIdTo IN ({marks})", id_list):
                page_in[dst].append(Link(src, dst))
            rows = self._select_in("SELECT paragraphid, pageid, anchorText FROM ParaLink WHERE pageid IN ({marks})", id_list)
            for para_id, page_id, anchor in rows:
                para_in[page_id].append(Link(para_id, page_id, anchor or ""))
        for pid, cat in self._select_in("SELECT pageid, category FROM PageCategory WHERE pageid IN ({marks})", id_list):
            cats[pid].append(cat)
        out = []
        for pid in id_list:
            if pid not in names:
                continue
            name = names[pid]
            if name is None:
                raise DataConsistencyError(f"Page {pid} has no name")
            out.append(
                Page(
                    pid,
                    name,
                    page_inlinks=tuple(page_in.get(pid, ())),
                    page_outlinks=tuple(page_out.get(pid, ())),
                    paragraph_inlinks=tuple(para_in.get(pid, ())),
                    categories=tuple(cats.get(pid, ())),
                )
            )
        return out

    def iter_texts(self, content_type: ContentType) -> Iterator[tuple[str, str]]:
        sql = (
            "SELECT paragraphid, paratext FROM Paragraph"
            if content_type == ContentType.PASSAGE
            else "SELECT pageid, pagename FROM Page"
        )
        try:
            for item_id, text in self._conn().execute(sql):
                yield item_id, text or ""
        except sqlite3.Error as e:
            raise DataConsistencyError(f"Corpus scan failed: {e}") from e

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def release_idle_connections(self) -> int:
        """Closes the connections of threads that are no longer alive, e.g. finished pool workers."""
        with self._lock:
            idle = [(t, c) for t, c in self._connections if not t.is_alive()]
            self._connections = [(t, c) for t, c in self._connections if t.is_alive()]
        for _, conn in idle:
            conn.close()
        if idle:
            logger.debug(f"Closed {len(idle)} idle corpus connections")
        return len(idle)

    def close(self) -> None:
        with self._lock:
            for _, conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

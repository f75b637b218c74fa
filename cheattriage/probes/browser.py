"""
Browser history probe. Chromium-family and Firefox profiles are read from
temporary copies of their SQLite databases (the browser usually holds them
open), including the `-wal` sidecar so recent, uncheckpointed visits count.
"""

import os
import shutil
import sqlite3
import tempfile
from contextlib import closing
from dataclasses import dataclass

from ..decoders.timestamps import chrome_time, firefox_time, format_browser_time
from ..executor import copy_locked_file
from ..log import log_debug
from .base import ProbeBase, probe
from .filesystem import appdata_local, appdata_roaming

SQLITE_SIDECARS = ("-wal",)


@dataclass(frozen=True)
class HistoryQuery:
    source: str
    file: str
    sql: str
    url_col: int
    title_col: int | None = None
    time_col: int | None = None


CHROMIUM_QUERIES = (
    HistoryQuery(
        "History", "History",
        "SELECT url, title, last_visit_time FROM urls ORDER BY last_visit_time DESC LIMIT 10000",
        url_col=0, title_col=1, time_col=2,
    ),
    HistoryQuery("Favicons", "Favicons", "SELECT page_url FROM icon_mapping LIMIT 10000", url_col=0),
    HistoryQuery("Top Sites", "Top Sites", "SELECT url, title FROM top_sites LIMIT 1000", url_col=0, title_col=1),
    HistoryQuery(
        "Shortcuts", "Shortcuts",
        "SELECT text, fill_into_edit, url FROM omni_box_shortcuts LIMIT 5000",
        url_col=2, title_col=0,
    ),
    HistoryQuery(
        "Network Predictor", "Network Action Predictor",
        "SELECT user_text, url FROM network_action_predictor LIMIT 5000",
        url_col=1, title_col=0,
    ),
    HistoryQuery("Visited Links", "Visited Links", "SELECT url FROM visited_links LIMIT 10000", url_col=0),
)

FIREFOX_HISTORY_SQL = """
SELECT p.url, p.title, h.visit_date
FROM moz_places p
LEFT JOIN moz_historyvisits h ON p.id = h.place_id
ORDER BY h.visit_date DESC LIMIT 10000
"""

FIREFOX_BOOKMARKS_SQL = """
SELECT p.url, b.title
FROM moz_bookmarks b
JOIN moz_places p ON b.fk = p.id
WHERE p.url IS NOT NULL LIMIT 5000
"""

FIREFOX_FORMS_SQL = "SELECT fieldname, value FROM moz_formhistory LIMIT 10000"


def chromium_roots() -> list[tuple[str, str]]:
    local = appdata_local()
    roaming = appdata_roaming()
    return [
        ("Chrome", os.path.join(local, "Google", "Chrome", "User Data")),
        ("Edge", os.path.join(local, "Microsoft", "Edge", "User Data")),
        ("Brave", os.path.join(local, "BraveSoftware", "Brave-Browser", "User Data")),
        ("Opera", os.path.join(roaming, "Opera Software", "Opera Stable")),
        ("Opera GX", os.path.join(roaming, "Opera Software", "Opera GX Stable")),
        ("Vivaldi", os.path.join(local, "Vivaldi", "User Data")),
        ("Yandex", os.path.join(local, "Yandex", "YandexBrowser", "User Data")),
        ("Chrome Canary", os.path.join(local, "Google", "Chrome SxS", "User Data")),
        ("Chromium", os.path.join(local, "Chromium", "User Data")),
    ]


def chromium_profiles(base: str) -> list[str]:
    """`Default`, every `Profile N`, and the root itself for Opera's flat layout."""
    if not os.path.isdir(base):
        return []

    out = []
    default = os.path.join(base, "Default")
    if os.path.isdir(default):
        out.append(default)
    try:
        with os.scandir(base) as it:
            numbered = sorted(e.path for e in it if e.is_dir() and e.name.startswith("Profile "))
    except OSError as ex:
        log_debug(f"Cannot list {base}: {ex}")
        numbered = []
    out.extend(numbered)

    if os.path.isfile(os.path.join(base, "History")):
        out.append(base)
    return out


def firefox_profiles() -> list[str]:
    root = os.path.join(appdata_roaming(), "Mozilla", "Firefox", "Profiles")
    try:
        with os.scandir(root) as it:
            return sorted(e.path for e in it if e.is_dir())
    except OSError:
        return []


@probe(
    "browserhistory",
    "Browser History Scanner",
    "Deep search of browser history and caches by keywords",
    "process",
)
class BrowserHistoryProbe(ProbeBase):
    def setup(self) -> None:
        self.seen: set[str] = set()

    def on_reset(self) -> None:
        self.seen.clear()

    def query(self, db_path: str, sql: str) -> list[tuple]:
        """
        Run `sql` against a private copy of `db_path`. Missing, locked or
        corrupt databases and absent tables all yield no rows.
        """
        if not os.path.isfile(db_path):
            return []

        tmp_dir = tempfile.mkdtemp(prefix="cheattriage_")
        try:
            snapshot = os.path.join(tmp_dir, os.path.basename(db_path) or "db")
            try:
                copy_locked_file(db_path, snapshot, token=self.run.token)
            except OSError as ex:
                log_debug(f"Cannot copy {db_path}: {ex}")
                return []
            for suffix in SQLITE_SIDECARS:
                if os.path.isfile(db_path + suffix):
                    try:
                        copy_locked_file(db_path + suffix, snapshot + suffix, token=self.run.token)
                    except OSError as ex:
                        log_debug(f"Cannot copy {db_path}{suffix}: {ex}")

            try:
                with closing(sqlite3.connect(snapshot)) as conn:
                    conn.execute("PRAGMA query_only = ON")
                    return conn.execute(sql).fetchall()
            except sqlite3.Error as ex:
                log_debug(f"{db_path}: {ex}")
                return []
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def report(self, source: str, url, title=None, when=None, quote_same_title: bool = False) -> None:
        if not isinstance(url, str) or not url:
            return
        title = title if isinstance(title, str) else ""

        matcher = self.ctx.matcher
        if not (matcher.contains_keyword(url) or matcher.contains_keyword(title)):
            return

        browser = source.split("/", 1)[0]
        key = f"{browser}:{url}".lower()
        if key in self.seen:
            return
        self.seen.add(key)

        line = f"[{source}] {matcher.tag(url, title)}{url}"
        if title and (quote_same_title or title != url):
            line += f' | "{title}"'
        if when is not None:
            line += f" | {format_browser_time(when)}"
        self.run.add(line)

    def scan_chromium(self, browser: str, profile: str) -> None:
        for q in CHROMIUM_QUERIES:
            self.run.check()
            for row in self.query(os.path.join(profile, q.file), q.sql):
                self.run.check()
                title = row[q.title_col] if q.title_col is not None else None
                when = chrome_time(row[q.time_col]) if q.time_col is not None else None
                self.report(f"{browser}/{q.source}", row[q.url_col], title, when)

    def scan_firefox(self, profile: str) -> None:
        places = os.path.join(profile, "places.sqlite")
        for url, title, visit in self.query(places, FIREFOX_HISTORY_SQL):
            self.run.check()
            self.report("Firefox/History", url, title, firefox_time(visit))

        for url, title in self.query(places, FIREFOX_BOOKMARKS_SQL):
            self.run.check()
            self.report("Firefox/Bookmarks", url, title, quote_same_title=True)

        matcher = self.ctx.matcher
        for field, value in self.query(os.path.join(profile, "formhistory.sqlite"), FIREFOX_FORMS_SQL):
            self.run.check()
            if not isinstance(value, str) or not matcher.contains_keyword(value):
                continue
            key = f"firefox:form:{value}".lower()
            if key in self.seen:
                continue
            self.seen.add(key)
            self.run.add(f'[Firefox/FormHistory] {matcher.tag(value)}[{field}] "{value}"')

    def collect(self) -> None:
        self.seen.clear()
        targets = [(browser, p) for browser, base in chromium_roots() for p in chromium_profiles(base)]
        targets += [("Firefox", p) for p in firefox_profiles()]

        for i, (browser, profile) in enumerate(targets, 1):
            self.run.check()
            self.run.progress(i, len(targets), f"{browser}: {os.path.basename(profile)}")
            if browser == "Firefox":
                self.scan_firefox(profile)
            else:
                self.scan_chromium(browser, profile)

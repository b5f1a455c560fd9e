"""
Popularity providers for media-cache.

A provider returns a ranked list of titles with an approximate path hint.
Everything here is best-effort: any failure raises ProviderUnavailable and
the sweep falls back to the filesystem scanner.
"""

import logging
import os
import sqlite3
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests
from plexapi.exceptions import PlexApiException
from plexapi.server import PlexServer

from mediacache.config import PopularityConfig
from mediacache.engine import Candidate
from mediacache.exceptions import ProviderUnavailable
from mediacache.system_utils import file_size

# Media server item types mapped to cache categories
JELLYFIN_TYPES = {"Movie": "movies", "Episode": "tv"}
JELLYFIN_LIBRARY_TYPES = {
    "MediaBrowser.Controller.Entities.Movies.Movie": "movies",
    "MediaBrowser.Controller.Entities.TV.Episode": "tv",
}
PLEX_TYPES = {"movie": "movies", "episode": "tv"}


@dataclass(frozen=True)
class PopularItem:
    """One ranked title as reported by the media server."""
    title: str
    category: str
    path_hint: str
    plays: int
    rank: int


class PopularityProvider:
    """Base class; subclasses implement get_popular."""

    name = "none"

    def get_popular(self) -> List[PopularItem]:
        raise NotImplementedError


class NullProvider(PopularityProvider):
    """Used when no media server is configured; always empty."""

    def get_popular(self) -> List[PopularItem]:
        return []


def _connect_readonly(db_path: str, timeout: float) -> sqlite3.Connection:
    if not db_path or not os.path.exists(db_path):
        raise ProviderUnavailable(f"Database not found: {db_path or '(not configured)'}")
    try:
        return sqlite3.connect(f"file:{db_path}?mode=ro", uri=True, timeout=timeout)
    except sqlite3.Error as e:
        raise ProviderUnavailable(f"Cannot open {db_path}: {e}")


class JellyfinPlaybackProvider(PopularityProvider):
    """Ranks titles by play count from the Playback Reporting plugin database.

    Paths come from the Jellyfin library database. When there is no playback
    history yet, the most recently added library items are used instead.
    """

    name = "jellyfin"

    PLAYBACK_QUERY = """
        SELECT ItemName, ItemType, COUNT(*) AS PlayCount, MAX(DateCreated) AS LastPlayed
        FROM PlaybackActivity
        WHERE ItemType IN ('Movie', 'Episode')
        GROUP BY ItemName, ItemType
        ORDER BY PlayCount DESC, LastPlayed DESC
        LIMIT ?
    """
    PATH_QUERY = "SELECT Path FROM TypedBaseItems WHERE Name = ? AND type = ? AND Path IS NOT NULL LIMIT 1"
    RECENT_QUERY = """
        SELECT Name, type, Path
        FROM TypedBaseItems
        WHERE type IN (?, ?) AND Path IS NOT NULL
        ORDER BY DateCreated DESC
        LIMIT ?
    """

    def __init__(self, playback_db: str, library_db: str, limit: int = 200, timeout: float = 10):
        self.playback_db = playback_db
        self.library_db = library_db
        self.limit = limit
        self.timeout = timeout

    def get_popular(self) -> List[PopularItem]:
        rows = []
        if self.playback_db and os.path.exists(self.playback_db):
            rows = self._query_playback()
        else:
            logging.debug("No playback database available, using recently added items")

        if rows:
            return self._rank_playback(rows)
        return self._recently_added()

    def _query_playback(self) -> list:
        conn = _connect_readonly(self.playback_db, self.timeout)
        try:
            return conn.execute(self.PLAYBACK_QUERY, (self.limit,)).fetchall()
        except sqlite3.Error as e:
            raise ProviderUnavailable(f"Playback query failed: {e}")
        finally:
            conn.close()

    def _rank_playback(self, rows: list) -> List[PopularItem]:
        library = None
        if self.library_db and os.path.exists(self.library_db):
            library = _connect_readonly(self.library_db, self.timeout)
        type_names = {v: k for k, v in JELLYFIN_LIBRARY_TYPES.items()}

        items: List[PopularItem] = []
        try:
            for name, item_type, plays, _last_played in rows:
                category = JELLYFIN_TYPES.get(item_type)
                if not category:
                    continue
                path_hint = ""
                if library is not None:
                    row = library.execute(self.PATH_QUERY, (name, type_names[category])).fetchone()
                    path_hint = row[0] if row else ""
                items.append(PopularItem(title=name, category=category, path_hint=path_hint,
                                         plays=int(plays), rank=len(items) + 1))
        except sqlite3.Error as e:
            raise ProviderUnavailable(f"Library lookup failed: {e}")
        finally:
            if library is not None:
                library.close()
        return items

    def _recently_added(self) -> List[PopularItem]:
        conn = _connect_readonly(self.library_db, self.timeout)
        try:
            rows = conn.execute(self.RECENT_QUERY, (*JELLYFIN_LIBRARY_TYPES, self.limit)).fetchall()
        except sqlite3.Error as e:
            raise ProviderUnavailable(f"Library query failed: {e}")
        finally:
            conn.close()

        return [
            PopularItem(title=name, category=JELLYFIN_LIBRARY_TYPES[item_type],
                        path_hint=path, plays=0, rank=i)
            for i, (name, item_type, path) in enumerate(rows, start=1)
        ]


class PlexHistoryProvider(PopularityProvider):
    """Ranks titles by how often they appear in the Plex watch history."""

    name = "plex"

    def __init__(self, plex_url: str, plex_token: str, limit: int = 200, timeout: float = 10):
        self.plex_url = plex_url
        self.plex_token = plex_token
        self.limit = limit
        self.timeout = timeout

    def get_popular(self) -> List[PopularItem]:
        logging.debug(f"Fetching watch history from Plex server: {self.plex_url}")
        try:
            plex = PlexServer(self.plex_url, self.plex_token, timeout=self.timeout)
            history = plex.history(maxresults=self.limit * 5)
        except (PlexApiException, requests.RequestException) as e:
            raise ProviderUnavailable(f"Plex history unavailable: {type(e).__name__}: {e}")

        plays: Counter = Counter()
        kinds: Dict[str, str] = {}
        titles: Dict[str, str] = {}
        for entry in history:
            category = PLEX_TYPES.get(getattr(entry, 'type', None))
            key = getattr(entry, 'ratingKey', None)
            if not category or key is None:
                continue
            plays[key] += 1
            kinds[key] = category
            grandparent = getattr(entry, 'grandparentTitle', None)
            titles[key] = f"{grandparent} - {entry.title}" if grandparent else entry.title

        items: List[PopularItem] = []
        for key, count in plays.most_common(self.limit):
            try:
                path = plex.fetchItem(int(key)).locations[0]
            except (PlexApiException, requests.RequestException, IndexError, AttributeError) as e:
                logging.debug(f"No file location for Plex item {key}: {e}")
                path = ""
            items.append(PopularItem(title=titles[key], category=kinds[key], path_hint=path,
                                     plays=count, rank=len(items) + 1))
        return items


def translate_path(path: str, path_mappings: Dict[str, str]) -> str:
    """Rewrite a media-server path to a host path using the longest matching prefix."""
    for prefix in sorted(path_mappings, key=len, reverse=True):
        stripped = prefix.rstrip('/')
        if path == stripped or path.startswith(stripped + '/'):
            return path_mappings[prefix].rstrip('/') + path[len(stripped):]
    return path


def resolve_popular_candidates(items: List[PopularItem], category: str, library_root: str,
                               source_folders: List[str], path_mappings: Optional[Dict[str, str]] = None,
                               min_size: int = 0) -> List[Candidate]:
    """Turn ranked items into candidates backed by existing library files.

    Items whose hint does not resolve to a regular file under one of the
    category's source folders are dropped. The popular category takes
    items of any type; other categories only their own.
    """
    roots = [os.path.join(library_root, folder) for folder in source_folders]
    candidates: List[Candidate] = []
    seen = set()

    for item in items:
        if category != "popular" and item.category != category:
            continue
        if not item.path_hint:
            continue
        path = os.path.normpath(translate_path(item.path_hint, path_mappings or {}))
        if path in seen or not any(path.startswith(root + os.sep) for root in roots):
            continue
        size = file_size(path)
        if size is None:
            logging.debug(f"Popular item not on library: {item.title} ({path})")
            continue
        if min_size and size < min_size:
            continue
        seen.add(path)
        candidates.append(Candidate(source_path=path, size=size, rank=item.rank, title=item.title))

    return candidates


def create_provider(config: PopularityConfig) -> PopularityProvider:
    if config.provider == "jellyfin":
        return JellyfinPlaybackProvider(config.playback_db, config.library_db, config.limit, config.timeout)
    if config.provider == "plex":
        return PlexHistoryProvider(config.plex_url, config.plex_token, config.limit, config.timeout)
    return NullProvider()

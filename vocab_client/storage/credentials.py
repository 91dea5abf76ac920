"""
Credential store adapters.

Both stores are scoped to the API origin and expose the same three calls:
get (None when absent), set and remove. Store-level failures surface as
ClientError(STORAGE), never as a missing value.
"""
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from requests.cookies import RequestsCookieJar

from ..errors import ClientError

logger = logging.getLogger("storage.credentials")

ACCESS_TOKEN = "accessToken"
REFRESH_TOKEN = "refreshToken"


def origin_of(base_url: str) -> str:
    """Reduce a base URL to scheme://host[:port]."""
    parts = urlsplit(base_url)
    if not parts.scheme or not parts.netloc:
        raise ClientError.validation(f"Invalid API base URL: {base_url!r}")
    return f"{parts.scheme}://{parts.netloc}"


class CredentialStore(ABC):
    """Origin-scoped credential storage."""

    @property
    @abstractmethod
    def origin(self) -> str:
        pass

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, name: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, name: str) -> None:
        """Delete a credential; removing a missing one is not an error."""
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS credentials (
    origin TEXT NOT NULL,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (origin, name)
);
"""


class SqliteCredentialStore(CredentialStore):
    """Credentials persisted in a local SQLite database."""

    def __init__(self, db_path: Path, base_url: str):
        self.db_path = Path(db_path)
        self._origin = origin_of(base_url)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise ClientError.storage(f"Failed to open credential store: {e}", e) from e

    @property
    def origin(self) -> str:
        return self._origin

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get(self, name: str) -> Optional[str]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM credentials WHERE origin = ? AND name = ?",
                    (self._origin, name),
                ).fetchone()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to get credential {name}: {e}", e) from e
        return row[0] if row else None

    def set(self, name: str, value: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO credentials (origin, name, value) VALUES (?, ?, ?)",
                    (self._origin, name, value),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to set credential {name}: {e}", e) from e

    def remove(self, name: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "DELETE FROM credentials WHERE origin = ? AND name = ?",
                    (self._origin, name),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to remove credential {name}: {e}", e) from e


class CookieCredentialStore(CredentialStore):
    """
    Credentials held as cookies in the HTTP session's jar.

    Used when the backend issues and rotates tokens via Set-Cookie; the jar is
    shared with the transport session so rotated cookies become visible here.
    """

    def __init__(self, jar: RequestsCookieJar, base_url: str):
        self._jar = jar
        self._origin = origin_of(base_url)
        self._domain = urlsplit(self._origin).hostname or ""

    @property
    def origin(self) -> str:
        return self._origin

    def _matching(self, name: str):
        # cookiejar files dotless hosts such as "localhost" under "localhost.local"
        domains = ("", self._domain, f"{self._domain}.local")
        return [
            cookie for cookie in list(self._jar)
            if cookie.name == name and cookie.domain.lstrip(".") in domains
        ]

    def get(self, name: str) -> Optional[str]:
        try:
            cookies = self._matching(name)
        except Exception as e:
            raise ClientError.storage(f"Failed to get cookie {name}: {e}", e) from e
        return cookies[-1].value if cookies else None

    def set(self, name: str, value: str) -> None:
        try:
            self._jar.set(name, value, domain=self._domain, path="/")
        except Exception as e:
            raise ClientError.storage(f"Failed to set cookie {name}: {e}", e) from e

    def remove(self, name: str) -> None:
        try:
            for cookie in self._matching(name):
                self._jar.clear(cookie.domain, cookie.path, cookie.name)
        except KeyError:
            logger.debug(f"Cookie {name} already gone")
        except Exception as e:
            raise ClientError.storage(f"Failed to remove cookie {name}: {e}", e) from e

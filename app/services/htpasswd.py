"""Lookup of HTTP Basic credentials in an htpasswd file.

Entries must be created with SHA (``htpasswd -s``) or bcrypt (``htpasswd -B``).
The file is reloaded when it changes on disk (checked at most once per
CHECK_INTERVAL) or when ``handle_reload_signal`` is called. Successfully
verified credentials are remembered for PASSWORD_CACHE_DURATION as a SHA-256
verifier of ``username:password`` so bcrypt does not run on every request.
"""
import asyncio
import base64
import csv
import hashlib
import hmac
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Optional, Union

import bcrypt

import config
from logger_config import setup_logger

logger = setup_logger()

USERNAME_SYMBOLS = frozenset("0123456789@.-")

SHA_PREFIX = "{SHA}"
BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class HtpasswdError(Exception):
    """The htpasswd file could not be parsed."""


@dataclass
class CacheEntry:
    verifier: bytearray
    expiry: float

    def wipe(self):
        """Overwrite the verifier bytes in place."""
        for i in range(len(self.verifier)):
            self.verifier[i] = 0


def check_password(hashed: str, password: str) -> bool:
    """Compare password against a stored {SHA} or bcrypt hash."""
    if hashed.startswith(SHA_PREFIX):
        digest = base64.b64encode(hashlib.sha1(password.encode("utf-8")).digest())
        return hmac.compare_digest(hashed[len(SHA_PREFIX):].encode("utf-8"), digest)
    if hashed.startswith(BCRYPT_PREFIXES):
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # malformed salt
            return False
    return False


def is_valid_username(username: str) -> bool:
    """Letters of any script, ASCII digits, "@", "." and "-"."""
    return bool(username) and all(ch.isalpha() or ch in USERNAME_SYMBOLS for ch in username)


def make_verifier(username: str, password: str) -> bytes:
    return hashlib.sha256(f"{username}:{password}".encode("utf-8")).digest()


def parse_htpasswd(lines: Iterable[str], source: str = "htpasswd") -> Dict[str, str]:
    """Parse colon separated username:hash records, skipping comments and blank lines."""
    content = (line.lstrip() for line in lines)
    records = csv.reader(
        (line for line in content if line and not line.startswith("#")),
        delimiter=":",
        skipinitialspace=True,
    )

    users = {}
    try:
        for record in records:
            if len(record) < 2:
                raise HtpasswdError(f"{source}:{records.line_num}: expected username:hash")
            username, hashed = record[0], record[1]
            if not is_valid_username(username):
                logger.warning(
                    f"Ignoring invalid username {username!r} in htpasswd, "
                    "consists of characters other than letters, digits, '@', '.' and '-'"
                )
                continue
            users[username] = hashed
    except (csv.Error, UnicodeDecodeError) as e:
        raise HtpasswdError(f"{source}: {e}") from e
    return users


class HtpasswdFile:
    """Map of usernames to password hashes backed by an htpasswd file."""

    def __init__(
        self,
        path: Union[str, Path],
        check_interval: float = config.CHECK_INTERVAL,
        cache_duration: float = config.PASSWORD_CACHE_DURATION,
    ):
        self.path = Path(path)
        self.check_interval = check_interval
        self.cache_duration = cache_duration

        # Guards _users, _cache, _stat and _check_due
        self._lock = threading.Lock()
        self._users: Dict[str, str] = {}
        self._cache: Dict[str, CacheEntry] = {}
        self._check_due = False
        self._stat: Optional[os.stat_result] = None

        self.reload()

    @property
    def usernames(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._users)

    def cached_users(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._cache)

    def reload(self):
        """Read the file and replace the user map.

        On error the current users are kept and the error is raised.
        """
        with open(self.path, "r", encoding="utf-8", newline="") as f:
            stat = os.fstat(f.fileno())
            users = parse_htpasswd(f, str(self.path))

        with self._lock:
            # Wipe every verifier derived from the old table
            for entry in self._cache.values():
                entry.wipe()
            self._cache = {}
            self._users = users
            self._stat = stat

        logger.debug(f"Loaded {len(users)} users from {self.path}")

    def tick(self):
        """Allow the next reload_check to look at the file."""
        with self._lock:
            self._check_due = True

    def reload_check(self) -> bool:
        """Reload the file if a check is due and it changed since the last load.

        Never blocks on the throttle; returns True when a reload happened.
        """
        with self._lock:
            if not self._check_due:
                return False
            self._check_due = False
            known = self._stat

        try:
            stat = os.stat(self.path)
        except OSError as e:
            logger.error(f"Could not stat htpasswd file: {e}")
            return False

        if known is not None and (stat.st_mtime_ns, stat.st_size) == (known.st_mtime_ns, known.st_size):
            return False

        try:
            self.reload()
        except (OSError, HtpasswdError) as e:
            logger.error(f"Could not reload htpasswd file: {e}")
            return False

        logger.info("Reloaded htpasswd file")
        return True

    def handle_reload_signal(self):
        """Reload immediately, regardless of the throttle."""
        try:
            self.reload()
        except (OSError, HtpasswdError) as e:
            logger.error(f"Could not reload htpasswd file: {e}")
            return
        logger.info("Reloaded htpasswd file")

    def validate(self, username: str, password: str) -> bool:
        """Return True if password matches the stored hash for username."""
        self.reload_check()

        verifier = make_verifier(username, password)

        with self._lock:
            # Entries added below go to this dict, never to one installed by a later reload
            cache = self._cache
            hashed = self._users.get(username)
            entry = cache.get(username)

        if hashed is None:
            return False

        if entry is not None and hmac.compare_digest(entry.verifier, verifier):
            with self._lock:
                entry.expiry = time.monotonic() + self.cache_duration
            return True

        if not check_password(hashed, password):
            logger.warning(f"Invalid htpasswd entry for {username}.")
            return False

        with self._lock:
            previous = cache.get(username)
            cache[username] = CacheEntry(
                verifier=bytearray(verifier),
                expiry=time.monotonic() + self.cache_duration,
            )
        if previous is not None:
            previous.wipe()
        return True

    def expire_cache(self, now: Optional[float] = None) -> int:
        """Wipe and drop cache entries whose expiry has passed."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            expired = [user for user, entry in self._cache.items() if entry.expiry <= now]
            for user in expired:
                self._cache.pop(user).wipe()
        return len(expired)

    async def throttle_timer(self):
        while True:
            await asyncio.sleep(self.check_interval)
            self.tick()

    async def expiry_timer(self, interval: float = config.CACHE_SWEEP_INTERVAL):
        while True:
            await asyncio.sleep(interval)
            expired = self.expire_cache()
            if expired:
                logger.debug(f"Expired {expired} cached credentials")

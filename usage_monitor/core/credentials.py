"""
Bearer token access.

The coordinator owns one ``CredentialCache``; lower layers only ever see
the token string it hands out.
"""

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .errors import CredentialError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_ENV = "USAGE_MONITOR_TOKEN"


class CredentialProvider(Protocol):
    """Source of bearer tokens."""

    def get_token(self) -> str:
        ...

    def refresh(self) -> None:
        ...


class EnvTokenProvider:
    """Reads the token from an environment variable, then from a file."""

    def __init__(self, env_var: str = DEFAULT_TOKEN_ENV, token_file: Optional[str] = None):
        self.env_var = env_var
        self.token_file = token_file

    def get_token(self) -> str:
        """Return the current token.

        Raises:
            CredentialError: If neither source yields a non-empty token
        """
        token = os.environ.get(self.env_var, "").strip()
        if token:
            return token

        if self.token_file:
            path = Path(self.token_file).expanduser()
            try:
                token = path.read_text(encoding="utf-8").strip()
            except OSError as e:
                raise CredentialError(f"Could not read token file {path}: {e}") from e
            if token:
                return token

        raise CredentialError(
            f"No API token found: set {self.env_var}"
            + (f" or write it to {self.token_file}" if self.token_file else "")
        )

    def refresh(self) -> None:
        # Both sources are re-read on every get_token call.
        logger.debug("Credential refresh requested; token will be re-read")


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class CredentialCache:
    """Cached token guarded by a read-write lock.

    ``get`` serves the cached token to any number of readers; a miss loads
    it from the provider under the write lock. ``invalidate`` drops the
    cached value so the next ``get`` goes back to the provider.
    """

    def __init__(self, provider: CredentialProvider):
        self._provider = provider
        self._lock = ReadWriteLock()
        self._token: Optional[str] = None

    def get(self) -> str:
        with self._lock.read():
            if self._token is not None:
                return self._token
        with self._lock.write():
            if self._token is None:
                self._token = self._provider.get_token()
            return self._token

    def invalidate(self) -> None:
        with self._lock.write():
            self._token = None
            self._provider.refresh()
        logger.info("Cached API token invalidated")

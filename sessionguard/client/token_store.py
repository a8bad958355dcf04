from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol, Union

from sessionguard.logging import get_logger

logger = get_logger(__name__)


@dataclass
class StoredTokens:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class TokenStore(Protocol):
    def load(self) -> StoredTokens: ...

    def save(self, tokens: StoredTokens) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    """Keeps the token pair for the lifetime of the process only."""

    def __init__(self, tokens: Optional[StoredTokens] = None) -> None:
        self._tokens = tokens or StoredTokens()

    def load(self) -> StoredTokens:
        return StoredTokens(self._tokens.access_token, self._tokens.refresh_token)

    def save(self, tokens: StoredTokens) -> None:
        self._tokens = StoredTokens(tokens.access_token, tokens.refresh_token)

    def clear(self) -> None:
        self._tokens = StoredTokens()


class FileTokenStore:
    """Persists the token pair as JSON readable only by the owner."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> StoredTokens:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return StoredTokens()
        except (OSError, ValueError) as exc:
            logger.warning("token_file_unreadable", error=str(exc), path=str(self.path))
            return StoredTokens()
        return StoredTokens(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
        )

    def save(self, tokens: StoredTokens) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tokens_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(asdict(tokens), handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

"""Local failover lock file"""

import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from ..core.errors import LockTimeout
from ..core.logs import SILLY
from ..core.retry import poll_until

logger = logging.getLogger(__name__)

LOCK_CONTENTS = "Currently updating failover state status"


class FailoverLock:
    """Exclusive marker file guarding same-host failover runs

    Only protects the window between acquiring and the run record being
    written. It is not a distributed lock.
    """

    def __init__(self, path: str, attempts: int = 30, interval: float = 1.0):
        self.path = Path(path)
        self.attempts = attempts
        self.interval = interval
        self._token: Optional[str] = None

    def _try_create(self, token: str) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.log(SILLY, f"State file exists, retrying after sleep: {self.path}")
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{LOCK_CONTENTS}\n{token}\n")
        return True

    async def acquire(self):
        token = uuid.uuid4().hex
        _, acquired = await poll_until(
            lambda: asyncio.to_thread(self._try_create, token),
            bool,
            interval=self.interval,
            max_attempts=self.attempts,
        )
        if not acquired:
            raise LockTimeout(f"State file still exists after retry period expired: {self.path}")
        self._token = token
        logger.debug(f"Acquired failover lock {self.path}")

    def release(self):
        """Remove our marker; a marker written by another run is left alone"""
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            contents = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        if token not in contents:
            logger.debug(f"Failover lock {self.path} now belongs to another run")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.debug(f"Released failover lock {self.path}")

    @property
    def held(self) -> bool:
        return self._token is not None

"""Credential rotation: rate-limit ledger and sticky round-robin key pool."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Collection, Dict, Iterable, List, Optional, Sequence

from errors import AllKeysExhausted, NoCredentialsConfigured
from logger import mask_secret

log = logging.getLogger("cody_proxy")

# retry_after value meaning "this key is banned, never use it again"
BANNED = -1

# Ban resolves to an unreachable resume instant through the regular ledger write.
_BANNED_RESUME_AT = math.inf

# A 429 always takes the key out of rotation for at least this long, even when
# retry-after is 0 or a date already in the past.
MIN_COOLDOWN_S = 1


class RateLimitLedger:
    """
    Per-credential resume instants.

    Presence of an entry means "unusable until resume_at". Entries are evicted
    lazily by the first reader that sees them elapsed.
    """

    def __init__(self) -> None:
        self._resume_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._resume_at)

    def is_usable(self, credential: str, now: float) -> bool:
        resume_at = self._resume_at.get(credential)
        if resume_at is None:
            return True
        if now >= resume_at:
            del self._resume_at[credential]
            return True
        return False

    def mark_unusable(self, credential: str, resume_at: float) -> None:
        # last write wins
        self._resume_at[credential] = resume_at

    def evict(self, credential: str) -> None:
        self._resume_at.pop(credential, None)

    def resume_at(self, credential: str) -> Optional[float]:
        return self._resume_at.get(credential)

    def earliest_resume(self) -> Optional[float]:
        if not self._resume_at:
            return None
        return min(self._resume_at.values())

    def usable_count(self, credentials: Iterable[str], now: float) -> int:
        return sum(1 for c in credentials if self.is_usable(c, now))


class KeyPool:
    """
    Ordered, fixed pool of credentials with sticky-until-limited selection.

    The key at the cursor is reused as long as it is usable; otherwise the
    remaining keys are scanned forward (modulo pool size) and the cursor moves
    to the first usable one.
    """

    def __init__(
        self,
        credentials: Sequence[str],
        *,
        clock: Callable[[], float] = time.time,
        ledger: Optional[RateLimitLedger] = None,
    ) -> None:
        keys = tuple(c for c in credentials if c)
        if not keys:
            raise NoCredentialsConfigured()
        self._keys = keys
        self._clock = clock
        self._ledger = ledger if ledger is not None else RateLimitLedger()
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def credentials(self) -> tuple:
        return self._keys

    @property
    def ledger(self) -> RateLimitLedger:
        return self._ledger

    def now(self) -> float:
        return self._clock()

    def select_credential(
        self, now: Optional[float] = None, exclude: Collection[str] = ()
    ) -> str:
        """
        Return a usable credential or raise AllKeysExhausted.

        Keys in `exclude` are skipped (the dispatcher passes the keys it already
        tried for the current request).
        """
        if now is None:
            now = self._clock()
        with self._lock:
            n = len(self._keys)
            cursor = self._cursor
            for offset in range(n):
                idx = (cursor + offset) % n
                key = self._keys[idx]
                if key in exclude:
                    continue
                was_limited = self._ledger.resume_at(key) is not None
                if self._ledger.is_usable(key, now):
                    if was_limited:
                        log.info("Key %s became available again", mask_secret(key))
                    if idx != cursor:
                        self._cursor = idx
                    return key
            resume_at = self._ledger.earliest_resume()
            if resume_at is None:
                # only excluded keys were usable
                resume_at = now
        log.error(
            "All %d keys are rate limited; earliest resume_at=%s",
            len(self._keys),
            resume_at,
        )
        raise AllKeysExhausted(resume_at)

    def mark_rate_limited(self, credential: str, retry_after_s: float = 60) -> None:
        """
        Put a credential into cooldown for retry_after_s seconds.

        retry_after_s == BANNED (-1) excludes the key for good. Anything shorter
        than MIN_COOLDOWN_S is raised to it so the next selection moves on.
        """
        now = self._clock()
        if retry_after_s == BANNED:
            log.warning("Key %s is banned! Excluding from rotation.", mask_secret(credential))
            resume_at = _BANNED_RESUME_AT
        else:
            resume_at = now + max(float(MIN_COOLDOWN_S), float(retry_after_s))
        with self._lock:
            self._ledger.mark_unusable(credential, resume_at)
            usable = self._ledger.usable_count(self._keys, now)
        log.warning(
            "API key %s marked as rate limited for %ss. %d of %d keys usable.",
            mask_secret(credential),
            "inf" if math.isinf(resume_at) else int(resume_at - now),
            usable,
            len(self._keys),
        )

    def snapshot(self) -> List[Dict[str, object]]:
        """Per-key status for diagnostics (secrets masked)."""
        now = self._clock()
        out: List[Dict[str, object]] = []
        with self._lock:
            current = self._keys[self._cursor]
            for key in self._keys:
                usable = self._ledger.is_usable(key, now)
                resume_at = self._ledger.resume_at(key)
                out.append(
                    {
                        "key": mask_secret(key),
                        "current": key == current,
                        "usable": usable,
                        "banned": resume_at is not None and math.isinf(resume_at),
                        "resume_in_s": None
                        if resume_at is None or math.isinf(resume_at)
                        else max(0, int(resume_at - now)),
                    }
                )
        return out

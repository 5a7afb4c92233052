from __future__ import annotations

import random
import secrets
import string
from datetime import datetime, timezone
from typing import Callable

from civic_intel.domain.errors import PersistenceFailure

TRACKING_PREFIX = "CMP"
TRACKING_ALPHABET = string.ascii_uppercase + string.digits
TRACKING_SUFFIX_LENGTH = 6


class TrackingNumberGenerator:
    """Issues citizen-facing numbers like CMP-250114-7KQ2ZD.

    Uniqueness is enforced by the repository reservation, not by the random
    suffix; a collision just draws another candidate.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        max_attempts: int = 20,
    ) -> None:
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rng = rng or secrets.SystemRandom()
        self.max_attempts = max_attempts

    def candidate(self) -> str:
        suffix = "".join(self.rng.choice(TRACKING_ALPHABET) for _ in range(TRACKING_SUFFIX_LENGTH))
        return f"{TRACKING_PREFIX}-{self.clock():%y%m%d}-{suffix}"

    def issue(self, reserve: Callable[[str], bool]) -> str:
        for _ in range(self.max_attempts):
            number = self.candidate()
            if reserve(number):
                return number
        raise PersistenceFailure("Could not reserve a unique tracking number")

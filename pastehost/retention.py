"""Retention policy: how long unattended content survives.

Default retention follows a cubic curve over the upload size, so small pastes
live close to the tier maximum and uploads near the size limit get the tier
minimum. Anonymous uploads are always capped by a hard ceiling; only keyed
uploads may opt out of expiry with ``"never"``.
"""

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from .config import SECONDS_PER_DAY, max_upload_bytes
from .errors import DurationParseError, PolicyRejected


NEVER = "never"

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86_400.0,
    "w": 604_800.0,
}
_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?|\.\d+)(ms|s|m|h|d|w)")
_DURATION_FULL = re.compile(r"^(?:(?:\d+(?:\.\d+)?|\.\d+)(?:ms|s|m|h|d|w))+$")

RequestedExpiry = Union[str, timedelta, None]

# Latest expiry that still renders as an ISO timestamp.
MAX_EXPIRES_AT = datetime(9999, 12, 31, tzinfo=timezone.utc).timestamp()


def parse_duration(text: str) -> timedelta:
    """Parse durations such as ``90s``, ``24h``, ``1h30m`` or ``1.5d``."""

    if not isinstance(text, str):
        raise DurationParseError(f"Invalid duration: {text!r}")
    candidate = text.strip().lower()
    if not candidate or not _DURATION_FULL.match(candidate):
        raise DurationParseError(f"Invalid duration: {text!r}")
    seconds = 0.0
    for value, unit in _DURATION_TOKEN.findall(candidate):
        seconds += float(value) * _DURATION_UNITS[unit]
    if not math.isfinite(seconds):
        raise DurationParseError(f"Duration out of range: {text!r}")
    try:
        return timedelta(seconds=seconds)
    except OverflowError as error:
        raise DurationParseError(f"Duration out of range: {text!r}") from error


class RetentionPolicy:
    def __init__(self, config: Dict[str, Any]) -> None:
        self.max_size = max(max_upload_bytes(config), 1)
        self.anon_min = config["anon_min_retention_days"] * SECONDS_PER_DAY
        self.anon_max = config["anon_max_retention_days"] * SECONDS_PER_DAY
        self.anon_ceiling = config["anon_retention_ceiling_days"] * SECONDS_PER_DAY
        self.key_min = config["key_min_retention_days"] * SECONDS_PER_DAY
        self.key_max = config["key_max_retention_days"] * SECONDS_PER_DAY

    def bounds(self, has_owner: bool) -> tuple:
        if has_owner:
            return self.key_min, self.key_max
        return self.anon_min, self.anon_max

    def default_retention(self, size: int, has_owner: bool) -> float:
        """Seconds of retention for an upload of *size* bytes with no request."""

        minimum, maximum = self.bounds(has_owner)
        ratio = min(max(size / self.max_size, 0.0), 1.0)
        retention = minimum + (maximum - minimum) * (1.0 - ratio) ** 3
        return min(max(retention, minimum), maximum)

    def evaluate(
        self,
        size: int,
        has_owner: bool,
        requested: RequestedExpiry,
        now: float,
    ) -> Optional[float]:
        """Return the absolute expiry timestamp, or ``None`` for never."""

        if isinstance(requested, str) and requested.strip().lower() == NEVER:
            if not has_owner:
                raise PolicyRejected("Only API key holders may create content that never expires")
            return None

        if requested in (None, ""):
            seconds = self.default_retention(size, has_owner)
        else:
            duration = requested if isinstance(requested, timedelta) else parse_duration(requested)
            seconds = duration.total_seconds()
            if seconds <= 0:
                raise PolicyRejected("Expiry must be in the future")

        if not has_owner and seconds > self.anon_ceiling:
            seconds = self.anon_ceiling
        if now + seconds > MAX_EXPIRES_AT:
            raise PolicyRejected("Expiry is too far in the future")
        return now + seconds

    def describe(self) -> Dict[str, Any]:
        def days(seconds: float) -> float:
            return round(seconds / SECONDS_PER_DAY, 2)

        return {
            "max_size_bytes": self.max_size,
            "no_key": {
                "min_days": days(self.anon_min),
                "max_days": days(self.anon_max),
                "ceiling_days": days(self.anon_ceiling),
            },
            "with_key": {
                "min_days": days(self.key_min),
                "max_days": days(self.key_max),
                "never_allowed": True,
            },
        }

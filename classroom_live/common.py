from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    WRITE_REJECTED = "WRITE_REJECTED"
    WRITE_TIMEOUT = "WRITE_TIMEOUT"
    TRANSPORT_UNAVAILABLE = "TRANSPORT_UNAVAILABLE"


class WarningCode(StrEnum):
    MALFORMED_EVENT = "MALFORMED_EVENT"
    ORDERING_GAP = "ORDERING_GAP"
    UPDATE_RETRIES_EXHAUSTED = "UPDATE_RETRIES_EXHAUSTED"
    RECONCILED_BY_TIMEOUT = "RECONCILED_BY_TIMEOUT"
    FEED_DISCONNECTED = "FEED_DISCONNECTED"


def now() -> float:
    return time.time()


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=True, separators=(",", ":"), sort_keys=True)


def json_loads(data: str) -> Any:
    return json.loads(data)


@dataclass(frozen=True, slots=True)
class LiveSettings:
    """Timeouts and retry limits of the realtime layer, in seconds where applicable."""

    grace_seconds: float = 1.5
    gap_timeout_seconds: float = 10.0
    confirm_timeout_seconds: float = 15.0
    write_timeout_seconds: float = 30.0
    max_update_retries: int = 3
    resync_initial_seconds: float = 0.25
    resync_max_seconds: float = 4.0
    resync_attempts: int = 5
    notification_limit: int = 10

    @classmethod
    def from_env(cls) -> LiveSettings:
        return cls(
            grace_seconds=env_int("CLASSROOM_LIVE_GRACE_MS", default=1500, min_value=0) / 1000.0,
            gap_timeout_seconds=env_int("CLASSROOM_LIVE_GAP_TIMEOUT_MS", default=10000, min_value=1)
            / 1000.0,
            confirm_timeout_seconds=env_int(
                "CLASSROOM_LIVE_CONFIRM_TIMEOUT_MS", default=15000, min_value=1
            )
            / 1000.0,
            write_timeout_seconds=env_int(
                "CLASSROOM_LIVE_WRITE_TIMEOUT_MS", default=30000, min_value=1
            )
            / 1000.0,
            max_update_retries=env_int("CLASSROOM_LIVE_UPDATE_RETRIES", default=3, min_value=0),
            resync_initial_seconds=env_int(
                "CLASSROOM_LIVE_RESYNC_INITIAL_MS", default=250, min_value=1
            )
            / 1000.0,
            resync_max_seconds=env_int("CLASSROOM_LIVE_RESYNC_MAX_MS", default=4000, min_value=1)
            / 1000.0,
            resync_attempts=env_int("CLASSROOM_LIVE_RESYNC_ATTEMPTS", default=5, min_value=1),
            notification_limit=env_int(
                "CLASSROOM_LIVE_NOTIFICATION_LIMIT", default=10, min_value=1
            ),
        )

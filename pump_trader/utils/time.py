from __future__ import annotations

import time


def utc_ts() -> float:
    return time.time()

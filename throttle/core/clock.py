"""Time sources used by the limiter.

A clock is any zero-argument callable returning UNIX time in seconds, so
tests can pass a ``Mock(return_value=...)`` or a small fake object method.
"""

from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], float]

wall_clock: Clock = time.time

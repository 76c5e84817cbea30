from __future__ import annotations

"""Shared logger for the scheduling engine.

Services log through uvicorn's error logger so capacity sweeps, plan
execution and rollback warnings land in the server output next to request
logs.
"""

import logging

logger = logging.getLogger("uvicorn.error")

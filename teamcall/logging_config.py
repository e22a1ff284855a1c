from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the headless client.

    The `teamcall.*` module loggers emit `key=value` lines:
      teamcall.net.*      signaling sends/receives, room joins, membership POSTs
      teamcall.rtc.media  capture acquire/reuse/release and mute toggles
      teamcall.rtc.*      session state changes, dropped or stale signaling,
                          roster changes and call failures

    INFO is enough to follow a call; DEBUG adds per-candidate and per-job
    detail. Coordinators also push short status lines to their `on_log`
    callback, which the CLI routes back into this logger.
    """

    effective_level = (level or os.environ.get("TEAMCALL_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aioice/aiortc are chatty at DEBUG; keep them one notch quieter.
    if effective_level == "DEBUG":
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.INFO)

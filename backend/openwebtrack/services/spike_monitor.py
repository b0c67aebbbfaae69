"""
Traffic Spike Detection
=======================

WHAT:
    Counts session starts per website over a sliding window and says when
    the owner's configured threshold has been reached.

WHY:
    Spike alerts must not add latency to /api/track, so detection is an
    in-memory check and the email goes out on a background task.

DESIGN:
    - One deque of start times per website; old entries are popped from the
      left, so a check costs O(expired + 1) instead of a scan over every
      site's timestamps.
    - A per-site cooldown (default 15 minutes) suppresses repeat alerts.
    - `evict()` drops empty deques and stale cooldown records; the process
      sweep calls it every minute.
    - State is process-local and lost on restart; a multi-instance deployment
      detects spikes per instance.

RELATED FILES:
    - services/ingestion.py: Records CREATED/ROTATED sessions
    - services/notifications.py: TrafficSpikeEmail / EmailSender
    - state.py: Owns the monitor and sweeps it
"""

import logging
import time
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Optional

from .notifications import EmailSender, TrafficSpikeEmail

logger = logging.getLogger(__name__)


class TrafficSpikeMonitor:
    """
    Usage:
        monitor = TrafficSpikeMonitor(cooldown_seconds=900)
        count = monitor.record_session_start(site_id, threshold=100, window_seconds=60)
        if count is not None:
            ...  # send the alert
    """

    def __init__(
        self,
        cooldown_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._starts: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, float] = {}
        self._last_alert: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._starts)

    def count(self, site_id: str) -> int:
        return len(self._starts.get(site_id, ()))

    @staticmethod
    def _trim(starts: Deque[float], cutoff: float) -> None:
        while starts and starts[0] < cutoff:
            starts.popleft()

    def record_session_start(self, site_id: str, threshold: int, window_seconds: float) -> Optional[int]:
        """Record one session start.

        Returns:
            The number of starts in the window when an alert is due, else None
        """
        now = self._clock()
        starts = self._starts.setdefault(site_id, deque())
        self._windows[site_id] = window_seconds
        self._trim(starts, now - window_seconds)
        starts.append(now)

        if threshold <= 0 or len(starts) < threshold:
            return None

        last_alert = self._last_alert.get(site_id)
        if last_alert is not None and now - last_alert < self.cooldown_seconds:
            return None

        self._last_alert[site_id] = now
        logger.info(
            f"[SPIKE] {len(starts)} session starts in {window_seconds}s for {site_id} "
            f"(threshold {threshold})"
        )
        return len(starts)

    def evict(self) -> int:
        """Drop expired start times, empty deques and elapsed cooldowns."""
        now = self._clock()
        removed = 0
        for site_id in list(self._starts):
            starts = self._starts[site_id]
            before = len(starts)
            self._trim(starts, now - self._windows.get(site_id, 0))
            removed += before - len(starts)
            if not starts:
                del self._starts[site_id]
                self._windows.pop(site_id, None)

        for site_id in [s for s, at in self._last_alert.items() if now - at >= self.cooldown_seconds]:
            del self._last_alert[site_id]
        return removed


async def send_spike_alert(
    sender: EmailSender,
    to: str,
    domain: str,
    website_id: str,
    visitors: int,
    threshold: int,
    window_seconds: int,
    frontend_url: str,
    detected_at: datetime,
) -> Optional[str]:
    email = TrafficSpikeEmail(
        domain=domain,
        visitors=visitors,
        threshold=threshold,
        window_seconds=window_seconds,
        date=detected_at.strftime("%Y-%m-%d %H:%M:%S UTC"),
        dashboard_url=f"{frontend_url.rstrip('/')}/dashboard/{website_id}",
    )
    message_id = await sender.send_email(to, email.subject, email.render_html(), email.render_text())
    if message_id is None:
        logger.warning(f"[SPIKE] Alert for {domain} was not delivered")
    return message_id

"""Turn raw attempts into the ranked, one-row-per-player leaderboard."""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import replace

from candyclash.settlement.types import LeaderboardEntry

# Leaderboard limit that keeps every ranked player.
FULL_FIELD = 0

_FAR_FUTURE = datetime.datetime.max.replace(tzinfo=datetime.UTC)


def _sort_key(entry: LeaderboardEntry) -> tuple[int, datetime.datetime, str]:
    completed = entry.completed_at or _FAR_FUTURE
    if completed.tzinfo is None:
        completed = completed.replace(tzinfo=datetime.UTC)
    return (entry.time_ms, completed, entry.attempt_id)


def rank_attempts(attempts: Iterable[LeaderboardEntry], limit: int | None = None) -> list[LeaderboardEntry]:
    """Keep each player's best attempt and sort fastest first.

    Ties on time go to the attempt completed first, then to the lower attempt id.
    A *limit* of ``None`` or :data:`FULL_FIELD` keeps every player.
    """
    best: dict[str, LeaderboardEntry] = {}
    for attempt in attempts:
        if not attempt.display_name:
            attempt = replace(attempt, display_name="Anonymous")
        current = best.get(attempt.user_id)
        if current is None or _sort_key(attempt) < _sort_key(current):
            best[attempt.user_id] = attempt

    ranked = sorted(best.values(), key=_sort_key)
    if limit:
        ranked = ranked[:limit]
    return ranked

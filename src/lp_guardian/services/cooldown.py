"""
Exit Cooldown Tracker.

Keeps one suppression window per (entity, reason bucket) so that the same
denied exit signal is not re-logged every cycle. Semantically equivalent
reasons ("SCORE_DROP", "TIER4_SCORE_DROP", "MHI_DROP") share one bucket.

Windows:
  - extended causes (cost not amortized, min hold not met): longest
  - score / MHI / health buckets: medium
  - velocity buckets: shorter
  - everything else: default
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from lp_guardian.config.settings import CooldownSettings
from lp_guardian.domain.models import CooldownCheck, CooldownEntry, SuppressionCause
from lp_guardian.domain.reasons import CooldownBucket, ExitReason
from lp_guardian.observability.logging import LOG_TAG_COOLDOWN, get_logger
from lp_guardian.observability.metrics import (
    record_cooldown_suppression,
    update_cooldown_entities,
)

logger = get_logger(__name__)


class CooldownTracker:
    """Per-entity suppression windows. Mutated only through its methods."""

    def __init__(
        self,
        settings: CooldownSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or CooldownSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        # entity -> cooldown key -> entry
        self._entries: dict[str, dict[str, CooldownEntry]] = {}

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def duration_for(
        self, reason: str | ExitReason, cause: SuppressionCause | None = None
    ) -> timedelta:
        """Window length: the cause decides first, then the reason bucket."""
        s = self.settings
        if cause is not None and cause.is_extended():
            return timedelta(seconds=s.extended_seconds)

        bucket = ExitReason.parse(reason).cooldown_bucket
        if bucket == CooldownBucket.AMORTIZATION_EXIT:
            return timedelta(seconds=s.extended_seconds)
        if bucket in (CooldownBucket.SCORE_EXIT, CooldownBucket.HEALTH_EXIT):
            return timedelta(seconds=s.score_seconds)
        if bucket == CooldownBucket.VELOCITY_EXIT:
            return timedelta(seconds=s.velocity_seconds)
        return timedelta(seconds=s.default_seconds)

    def _active_entry(self, entity: str, key: str, now: datetime) -> CooldownEntry | None:
        entry = self._entries.get(entity, {}).get(key)
        if entry is None or now >= entry.suppressed_until:
            return None
        return entry

    def check(
        self, entity: str, reason: str | ExitReason, now: datetime | None = None
    ) -> CooldownCheck:
        """
        Look up the cooldown for (entity, reason bucket).

        While on cooldown, should_log is true once every N suppressions.
        """
        if not self.enabled:
            return CooldownCheck(on_cooldown=False, should_log=True)

        now = now or self._clock()
        key = ExitReason.parse(reason).cooldown_key
        entry = self._active_entry(entity, key, now)
        if entry is None:
            return CooldownCheck(on_cooldown=False, should_log=True)

        count = entry.suppression_count
        remaining = entry.suppressed_until - now
        return CooldownCheck(
            on_cooldown=True,
            should_log=count % self.settings.log_every_n_suppressions == 0,
            remaining_ms=int(remaining.total_seconds() * 1000),
            suppression_count=count,
        )

    def record(
        self,
        entity: str,
        reason: str | ExitReason,
        cause: SuppressionCause | None = None,
        now: datetime | None = None,
    ) -> CooldownEntry | None:
        """Start or extend the cooldown for (entity, reason bucket)."""
        if not self.enabled:
            return None

        now = now or self._clock()
        parsed = ExitReason.parse(reason)
        key = parsed.cooldown_key
        until = now + self.duration_for(parsed, cause)

        entry = self._active_entry(entity, key, now)
        if entry is None:
            entry = CooldownEntry(
                entity=entity,
                bucket=key,
                cause=cause,
                suppressed_until=until,
                suppression_count=1,
                first_triggered=now,
                last_triggered=now,
            )
            self._entries.setdefault(entity, {})[key] = entry
            logger.debug(
                f"{LOG_TAG_COOLDOWN} {entity} {key} suppressed until {until:%H:%M:%S} "
                f"(cause={cause.value if cause else 'n/a'})"
            )
        else:
            entry.suppression_count += 1
            entry.suppressed_until = until
            entry.last_triggered = now
            if cause is not None:
                entry.cause = cause
            if entry.suppression_count % self.settings.log_every_n_suppressions == 0:
                logger.debug(
                    f"{LOG_TAG_COOLDOWN} {entity} {key} still suppressed "
                    f"({entry.suppression_count} suppressions since {entry.first_triggered:%H:%M:%S})"
                )

        record_cooldown_suppression(key)
        update_cooldown_entities(len(self._entries))
        return entry

    def should_process(
        self,
        entity: str,
        reason: str | ExitReason,
        cause: SuppressionCause | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        False while on cooldown (and counts the suppression).

        Combined helper for callers that only need a yes/no.
        """
        status = self.check(entity, reason, now)
        if status.on_cooldown:
            self.record(entity, reason, cause, now)
            return False
        return True

    def clear(self, entity: str, reason: str | ExitReason | None = None) -> int:
        """Remove one or all cooldowns for an entity. Returns how many were removed."""
        entries = self._entries.get(entity)
        if not entries:
            return 0

        if reason is None:
            removed = len(entries)
            del self._entries[entity]
        else:
            removed = 1 if entries.pop(ExitReason.parse(reason).cooldown_key, None) else 0
            if not entries:
                del self._entries[entity]

        update_cooldown_entities(len(self._entries))
        return removed

    def prune_expired(self, now: datetime | None = None) -> int:
        """Drop entries whose window has elapsed."""
        now = now or self._clock()
        removed = 0
        for entity in list(self._entries):
            entries = self._entries[entity]
            for key in [k for k, e in entries.items() if now >= e.suppressed_until]:
                del entries[key]
                removed += 1
            if not entries:
                del self._entries[entity]
        if removed:
            update_cooldown_entities(len(self._entries))
        return removed

    def summary(self, entity: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._clock()
        entries = self._entries.get(entity, {})
        active = [e for e in entries.values() if now < e.suppressed_until]
        return {
            "active_cooldowns": len(active),
            "total_suppressions": sum(e.suppression_count for e in entries.values()),
            "reasons": sorted(e.bucket for e in active),
        }

    def status(self, now: datetime | None = None) -> dict[str, list[dict[str, Any]]]:
        """All active cooldowns, grouped by entity."""
        now = now or self._clock()
        result: dict[str, list[dict[str, Any]]] = {}
        for entity, entries in self._entries.items():
            active = [
                {
                    "bucket": e.bucket,
                    "cause": e.cause.value if e.cause else None,
                    "suppression_count": e.suppression_count,
                    "remaining_ms": int((e.suppressed_until - now).total_seconds() * 1000),
                }
                for e in entries.values()
                if now < e.suppressed_until
            ]
            if active:
                result[entity] = active
        return result

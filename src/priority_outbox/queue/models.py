"""Queue models: priority enum, tier and queue configuration, QueuedMessage.

Messages are ordered by descending tier weight, then ascending timestamp.
A message leaves the queue when it is delivered, dead-lettered after
``max_retries`` failed attempts, evicted under overflow pressure, or swept
once its tier's ``max_age_ms`` has elapsed.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MessagePriority(str, Enum):
    """Priority tiers for queued messages."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PriorityTier(BaseModel):
    """Ordering weight and optional expiry window for one priority tier."""

    model_config = ConfigDict(extra="forbid")

    weight: int = Field(description="Higher weight is dispatched first")
    max_age_ms: int | None = Field(
        default=None, gt=0, description="Expiry window in ms (None = never expires)"
    )


def _default_priority_config() -> dict[MessagePriority, PriorityTier]:
    return {
        MessagePriority.HIGH: PriorityTier(weight=3, max_age_ms=300_000),  # 5 minutes
        MessagePriority.MEDIUM: PriorityTier(weight=2, max_age_ms=900_000),  # 15 minutes
        MessagePriority.LOW: PriorityTier(weight=1, max_age_ms=3_600_000),  # 1 hour
    }


class QueueConfig(BaseModel):
    """Tunables for a :class:`~priority_outbox.queue.manager.MessageQueue`."""

    model_config = ConfigDict(extra="forbid")

    max_size: int = Field(default=1000, ge=1, description="Maximum queued messages")
    max_retries: int = Field(
        default=3, ge=1, description="Failed attempts before a message is dead-lettered"
    )
    retry_delay_ms: int = Field(
        default=5000, ge=0, description="Pause after a failed attempt (ms)"
    )
    processing_interval_ms: int = Field(
        default=1000, ge=0, description="Delay between processing ticks (ms)"
    )
    priority_config: dict[MessagePriority, PriorityTier] = Field(
        default_factory=_default_priority_config
    )
    resort_on_retry: bool = Field(
        default=False,
        description="Re-sort by priority after a retry instead of leaving the message at the tail",
    )
    drop_expired_on_dequeue: bool = Field(
        default=False, description="Drop an expired head message instead of delivering it"
    )

    @field_validator("priority_config")
    @classmethod
    def validate_tiers(
        cls, v: dict[MessagePriority, PriorityTier]
    ) -> dict[MessagePriority, PriorityTier]:
        """Every priority must map to a tier, and weights must strictly order the tiers."""
        missing = [p.value for p in MessagePriority if p not in v]
        if missing:
            raise ValueError(f"priority_config is missing tiers: {missing}")
        weights = [tier.weight for tier in v.values()]
        if len(set(weights)) != len(weights):
            raise ValueError(f"priority_config weights must be distinct, got: {weights}")
        return v

    def tier(self, priority: MessagePriority) -> PriorityTier:
        """Return the tier configuration for ``priority``."""
        return self.priority_config[priority]

    def weight(self, priority: MessagePriority) -> int:
        """Return the ordering weight for ``priority``."""
        return self.priority_config[priority].weight

    def merged(self, overrides: Mapping[str, Any]) -> QueueConfig:
        """Return a new config with ``overrides`` applied.

        Top-level fields are replaced. ``priority_config`` is merged per tier
        and per field, so overriding one tier's ``weight`` keeps its
        ``max_age_ms`` and leaves the other tiers alone.
        """
        data = self.model_dump()
        for key, value in overrides.items():
            if key != "priority_config":
                data[key] = value

        tier_overrides = overrides.get("priority_config") or {}
        for priority, tier in tier_overrides.items():
            if isinstance(tier, PriorityTier):
                tier = tier.model_dump(exclude_unset=True)
            data["priority_config"][MessagePriority(priority)].update(tier)

        return QueueConfig.model_validate(data)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class QueuedMessage:
    """A single message waiting in the queue.

    Attributes:
        id: Unique message identifier.
        type: Caller-defined type tag, used for dispatch.
        payload: Opaque JSON-serialisable message body.
        timestamp: Enqueue time; secondary ordering key within a tier.
        priority: Priority tier; fixed for the life of the message.
        retries: Failed delivery attempts so far.
        expires_at: Time after which the message may be swept.
    """

    type: str
    payload: Any = None
    timestamp: datetime = field(default_factory=_utcnow)
    priority: MessagePriority = MessagePriority.MEDIUM
    retries: int = 0
    expires_at: datetime | None = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def is_expired(self, now: datetime) -> bool:
        """Whether the message's expiry window has elapsed at ``now``."""
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialisation."""
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "retries": self.retries,
            "priority": self.priority.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedMessage:
        """Create a QueuedMessage from a persisted record."""
        return cls(
            id=data.get("id") or str(uuid4()),
            type=data["type"],
            payload=data.get("payload"),
            timestamp=_parse_datetime(data.get("timestamp")) or _utcnow(),
            priority=MessagePriority(data.get("priority", MessagePriority.MEDIUM)),
            retries=int(data.get("retries", 0)),
            expires_at=_parse_datetime(data.get("expires_at")),
        )

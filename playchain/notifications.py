"""
playchain/notifications.py - Notification Dispatcher.

Every event the services emit is one of a closed set of frozen payload
dataclasses, one per event type. The dispatcher stores notifications per
recipient (broadcasts under BROADCAST), honours per-player preferences, and
fans each new notification out to subscribers (the WebSocket manager in
api/server.py is one).

Delivery over email/push is not done here; preferences only record the
player's choice for those channels.
"""

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, ClassVar, Union

from .errors import ValidationError
from .models import from_iso, to_iso, utcnow
from .store import IDENTITY, Codec, Store, list_codec

logger = logging.getLogger(__name__)

# Recipient marker for notifications addressed to every player
BROADCAST = "*"


# ============================================================================
# Payloads
# ============================================================================


@dataclass(frozen=True)
class TournamentStart:
    type: ClassVar[str] = "tournament_start"
    title: ClassVar[str] = "Tournament Started"

    tournament_id: str
    name: str

    def describe(self) -> str:
        return f"Tournament {self.name} has started"


@dataclass(frozen=True)
class TournamentEnd:
    type: ClassVar[str] = "tournament_end"
    title: ClassVar[str] = "Tournament Ended"

    tournament_id: str
    name: str
    player_count: int

    def describe(self) -> str:
        return f"Tournament {self.name} has ended"


@dataclass(frozen=True)
class PrizeDistribution:
    type: ClassVar[str] = "prize_distribution"
    title: ClassVar[str] = "Tournament Victory"

    tournament_id: str
    rank: int
    prize: int

    def describe(self) -> str:
        return f"You placed #{self.rank} in tournament {self.tournament_id} and earned {self.prize}"


@dataclass(frozen=True)
class RegistrationOpen:
    type: ClassVar[str] = "registration_open"
    title: ClassVar[str] = "Tournament Registration Open"

    tournament_id: str
    name: str
    entry_fee: int
    max_players: int

    def describe(self) -> str:
        return f"Registration is now open for tournament {self.name}"


@dataclass(frozen=True)
class PlayerJoined:
    type: ClassVar[str] = "player_joined"
    title: ClassVar[str] = "Tournament Joined"

    tournament_id: str
    player: str
    player_count: int

    def describe(self) -> str:
        return f"You have joined tournament {self.tournament_id}"


@dataclass(frozen=True)
class AchievementUnlocked:
    type: ClassVar[str] = "achievement_unlocked"
    title: ClassVar[str] = "Achievement Unlocked"

    achievement_id: str
    name: str
    points: int

    def describe(self) -> str:
        return f"You unlocked the {self.name} achievement!"


@dataclass(frozen=True)
class LevelUp:
    type: ClassVar[str] = "level_up"
    title: ClassVar[str] = "Level Up!"

    level: int
    previous_level: int

    def describe(self) -> str:
        return f"Congratulations! You've reached level {self.level}!"


@dataclass(frozen=True)
class RewardAvailable:
    type: ClassVar[str] = "reward_available"
    title: ClassVar[str] = "Reward Available"

    achievement_id: str
    points: int
    badge: str | None = None
    reward_title: str | None = None

    def describe(self) -> str:
        return f"{self.points} points are ready to claim for {self.achievement_id}"


NotificationPayload = Union[
    TournamentStart,
    TournamentEnd,
    PrizeDistribution,
    RegistrationOpen,
    PlayerJoined,
    AchievementUnlocked,
    LevelUp,
    RewardAvailable,
]

PAYLOAD_TYPES: dict[str, type] = {
    cls.type: cls
    for cls in (
        TournamentStart,
        TournamentEnd,
        PrizeDistribution,
        RegistrationOpen,
        PlayerJoined,
        AchievementUnlocked,
        LevelUp,
        RewardAvailable,
    )
}

NOTIFICATION_TYPES = tuple(PAYLOAD_TYPES)


def _check_type(kind: str) -> str:
    if kind not in PAYLOAD_TYPES:
        raise ValidationError.for_field("type", f"Unknown notification type: {kind}")
    return kind


# ============================================================================
# Records
# ============================================================================


@dataclass(frozen=True)
class Notification:
    id: str
    recipient: str
    message: str
    payload: NotificationPayload
    read: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def type(self) -> str:
        return self.payload.type

    @property
    def title(self) -> str:
        return self.payload.title

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "data": asdict(self.payload),
            "read": self.read,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        payload_cls = PAYLOAD_TYPES[data["type"]]
        return cls(
            id=data["id"],
            recipient=data["recipient"],
            message=data["message"],
            payload=payload_cls(**data["data"]),
            read=bool(data.get("read", False)),
            created_at=from_iso(data["created_at"]),
        )


@dataclass
class NotificationPreference:
    type: str
    enabled: bool = True
    in_app: bool = True
    email: bool = False
    push: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "enabled": self.enabled,
            "in_app": self.in_app,
            "email": self.email,
            "push": self.push,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationPreference":
        return cls(
            type=_check_type(data["type"]),
            enabled=bool(data.get("enabled", True)),
            in_app=bool(data.get("in_app", True)),
            email=bool(data.get("email", False)),
            push=bool(data.get("push", False)),
        )


NOTIFICATION_CODEC: Codec[Notification] = Codec(Notification.to_dict, Notification.from_dict)
PREFERENCES_CODEC: Codec[list[NotificationPreference]] = list_codec(
    Codec(NotificationPreference.to_dict, NotificationPreference.from_dict)
)


def default_preferences() -> list[NotificationPreference]:
    return [NotificationPreference(type=kind) for kind in NOTIFICATION_TYPES]


Subscriber = Callable[[Notification], None]


# ============================================================================
# Dispatcher
# ============================================================================


class NotificationDispatcher:
    """Stores notifications and fans them out to subscribers."""

    def __init__(self, store: Store):
        self._inbox = store.repository("notifications", list_codec(NOTIFICATION_CODEC))
        self._prefs = store.repository("notification_preferences", PREFERENCES_CODEC)
        # address -> ids of broadcast notifications that player has read
        self._broadcast_reads = store.repository("broadcast_reads", IDENTITY)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every stored notification. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _fan_out(self, notification: Notification) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(notification)
            except Exception as e:
                logger.warning(f"Notification subscriber failed for {notification.id}: {e}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self, recipient: str, payload: NotificationPayload, message: str | None = None
    ) -> Notification | None:
        """Store a notification for one recipient (or BROADCAST) and push it to subscribers.

        Returns None when the recipient has disabled this notification type.
        """
        if recipient != BROADCAST and not self.wants(recipient, payload.type):
            logger.debug(f"{recipient} has {payload.type} disabled, not storing")
            return None

        notification = Notification(
            id=str(uuid.uuid4()),
            recipient=recipient,
            message=message or payload.describe(),
            payload=payload,
        )
        with self._lock:
            inbox = list(self._inbox.get(recipient) or [])
            inbox.append(notification)
            self._inbox.put(recipient, inbox)

        logger.debug(f"Notification {payload.type} -> {recipient}")
        self._fan_out(notification)
        return notification

    def broadcast(self, payload: NotificationPayload, message: str | None = None) -> Notification:
        return self.dispatch(BROADCAST, payload, message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _visible(self, address: str) -> list[Notification]:
        """Own notifications plus broadcasts, read flag resolved for this address."""
        own = list(self._inbox.get(address) or [])
        if address == BROADCAST:
            return own
        read_ids = set(self._broadcast_reads.get(address) or [])
        enabled = {p.type for p in self.get_preferences(address) if p.enabled}
        broadcasts = [
            replace(n, read=n.id in read_ids)
            for n in self._inbox.get(BROADCAST) or []
            if n.type in enabled
        ]
        return own + broadcasts

    def get_notifications(
        self,
        address: str,
        limit: int = 10,
        offset: int = 0,
        unread_only: bool = False,
        types: list[str] | None = None,
    ) -> tuple[list[Notification], int]:
        """Newest first. Returns (page, total matching before pagination)."""
        if limit < 0 or offset < 0:
            raise ValidationError.for_field("limit", "limit and offset must be non-negative")
        for kind in types or []:
            _check_type(kind)

        with self._lock:
            items = self._visible(address)

        if unread_only:
            items = [n for n in items if not n.read]
        if types:
            items = [n for n in items if n.type in types]

        # Later-inserted first among equal timestamps
        items.reverse()
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[offset:offset + limit], len(items)

    def unread(self, address: str) -> list[Notification]:
        with self._lock:
            items = [n for n in self._visible(address) if not n.read]
        return sorted(items, key=lambda n: n.created_at)

    def mark_as_read(self, address: str, notification_ids: list[str]) -> int:
        """Mark the given ids read for this address. Unknown ids are ignored."""
        wanted = set(notification_ids)
        marked = 0
        with self._lock:
            own = list(self._inbox.get(address) or [])
            updated = []
            for n in own:
                if n.id in wanted and not n.read:
                    n = replace(n, read=True)
                    marked += 1
                updated.append(n)
            if marked:
                self._inbox.put(address, updated)

            broadcast_ids = {n.id for n in self._inbox.get(BROADCAST) or []}
            already = list(self._broadcast_reads.get(address) or [])
            fresh = [i for i in wanted & broadcast_ids if i not in already]
            if fresh:
                self._broadcast_reads.put(address, already + sorted(fresh))
                marked += len(fresh)
        return marked

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preferences(self, address: str) -> list[NotificationPreference]:
        stored = {p.type: p for p in self._prefs.get(address) or []}
        return [stored.get(p.type, p) for p in default_preferences()]

    def update_preferences(
        self, address: str, preferences: list[NotificationPreference]
    ) -> list[NotificationPreference]:
        """Merge the given per-type preferences over the player's current ones."""
        for pref in preferences:
            _check_type(pref.type)
        with self._lock:
            merged = {p.type: p for p in self.get_preferences(address)}
            for pref in preferences:
                merged[pref.type] = pref
            result = [merged[kind] for kind in NOTIFICATION_TYPES]
            self._prefs.put(address, result)
        return result

    def wants(self, address: str, kind: str) -> bool:
        for pref in self._prefs.get(address) or []:
            if pref.type == kind:
                return pref.enabled
        return True

from __future__ import annotations

import asyncio
import itertools
import json
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from headscale_admin.logger import get_logger
from headscale_admin.metrics import record_push_message, record_runtime_loop
from headscale_admin.schemas.headscale import Node
from headscale_admin.services.aggregator import Aggregator, SnapshotRefresh
from headscale_admin.services.formatting import format_iso
from headscale_admin.services.snapshots import Snapshot

_logger = get_logger("services.push")

EVENT_STATS_UPDATE = "stats_update"
EVENT_NODE_STATUS_CHANGE = "node_status_change"
EVENT_USER_ACTIVITY = "user_activity"

DEMO_ACTIVITY_CATALOG: tuple[Dict[str, str], ...] = (
    {
        "title": "User authenticated",
        "description": "Successful login from new device",
        "icon": "fas fa-sign-in-alt",
        "color": "success",
    },
    {
        "title": "Key expired",
        "description": "Pre-auth key reached expiration",
        "icon": "fas fa-key",
        "color": "warning",
    },
    {
        "title": "Route updated",
        "description": "Network routing table modified",
        "icon": "fas fa-route",
        "color": "info",
    },
    {
        "title": "Health check",
        "description": "System health verification passed",
        "icon": "fas fa-heartbeat",
        "color": "success",
    },
)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PushMessage:
    event: str
    data: Dict[str, Any]

    def encode(self) -> str:
        """Render as a Server-Sent Events frame."""
        payload = json.dumps(self.data, separators=(",", ":"), default=str)
        return f"event: {self.event}\ndata: {payload}\n\n"


@dataclass
class Subscription:
    id: int
    queue: "asyncio.Queue[PushMessage]"
    principal: str = ""
    active: bool = True
    dropped: int = field(default=0)

    async def next_message(self, timeout: float) -> Optional[PushMessage]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class PushRelay:
    """Best-effort fan-out of snapshot and domain events to live viewers.

    Delivery is at-most-once: each subscriber has a bounded queue, a full
    queue drops the message for that subscriber only, and new subscribers
    receive nothing that was published before they joined.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        *,
        stats_interval_seconds: float = 30.0,
        queue_size: int = 32,
        demo_activity_enabled: bool = False,
        demo_activity_interval_seconds: float = 60.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._aggregator = aggregator
        self._stats_interval = stats_interval_seconds
        self._queue_size = queue_size
        self._demo_enabled = demo_activity_enabled
        self._demo_interval = demo_activity_interval_seconds
        self._rng = rng or random.Random()
        self._ids = itertools.count(1)
        self._subscribers: Dict[int, Subscription] = {}
        self._node_states: Optional[Dict[str, bool]] = None
        self._stop = asyncio.Event()
        self._tasks: List["asyncio.Task[None]"] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def demo_activity_enabled(self) -> bool:
        return self._demo_enabled

    def subscribe(self, principal: str = "") -> Subscription:
        subscription = Subscription(
            id=next(self._ids),
            queue=asyncio.Queue(maxsize=self._queue_size),
            principal=principal,
        )
        self._subscribers[subscription.id] = subscription
        _logger.info(
            "push.subscribe",
            "Viewer subscribed",
            subscription_id=subscription.id,
            principal=principal,
            subscribers=len(self._subscribers),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        if self._subscribers.pop(subscription.id, None) is not None:
            _logger.info(
                "push.unsubscribe",
                "Viewer disconnected",
                subscription_id=subscription.id,
                dropped=subscription.dropped,
                subscribers=len(self._subscribers),
            )

    def broadcast(self, event: str, data: Dict[str, Any]) -> int:
        message = PushMessage(event=event, data=data)
        delivered = 0
        dropped = 0
        for subscription in list(self._subscribers.values()):
            if not subscription.active:
                continue
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                subscription.dropped += 1
                dropped += 1
                continue
            delivered += 1
        record_push_message(event=event, delivered=delivered, dropped=dropped)
        if dropped:
            _logger.warning(
                "push.drop",
                "Dropped message for slow viewers",
                push_event=event,
                dropped=dropped,
            )
        return delivered

    def publish_stats(self, snapshot: Snapshot) -> int:
        return self.broadcast(EVENT_STATS_UPDATE, snapshot.to_payload())

    def publish_node_status_change(self, node: Node, online: bool) -> int:
        return self.broadcast(
            EVENT_NODE_STATUS_CHANGE,
            {
                "id": node.id,
                "name": node.display_name,
                "status": "online" if online else "offline",
                "lastSeen": format_iso(node.last_seen),
                "changedAt": _utcnow_iso(),
            },
        )

    def publish_user_activity(
        self,
        title: str,
        description: str,
        *,
        icon: str = "fas fa-info-circle",
        color: str = "info",
        demo: bool = False,
    ) -> int:
        data: Dict[str, Any] = {
            "title": title,
            "description": description,
            "icon": icon,
            "color": color,
            "time": _utcnow_iso(),
        }
        if demo:
            data["demo"] = True
        return self.broadcast(EVENT_USER_ACTIVITY, data)

    def detect_node_transitions(self, nodes: List[Node]) -> List[tuple[Node, bool]]:
        """Publish an event for every node whose online flag flipped.

        The first listing only records state. Nodes that disappear are
        forgotten without an event.
        """
        current = {node.id: node.online for node in nodes}
        previous = self._node_states
        self._node_states = current
        if previous is None:
            return []
        changes: List[tuple[Node, bool]] = []
        for node in nodes:
            before = previous.get(node.id)
            if before is None or before == node.online:
                continue
            changes.append((node, node.online))
            self.publish_node_status_change(node, node.online)
        return changes

    async def tick_stats(self) -> SnapshotRefresh:
        refresh = await self._aggregator.refresh_snapshot()
        if not refresh.accepted:
            return refresh
        self.publish_stats(refresh.snapshot)
        if refresh.nodes is not None:
            self.detect_node_transitions(refresh.nodes)
        return refresh

    def emit_demo_activity(self) -> Dict[str, str]:
        activity = dict(self._rng.choice(DEMO_ACTIVITY_CATALOG))
        self.publish_user_activity(
            activity["title"],
            activity["description"],
            icon=activity["icon"],
            color=activity["color"],
            demo=True,
        )
        return activity

    async def start(self) -> None:
        self._stop.clear()
        self._tasks.append(asyncio.create_task(self._stats_loop()))
        _logger.info(
            "push.stats.start",
            "Started stats refresh loop",
            interval_seconds=self._stats_interval,
        )
        if self._demo_enabled:
            self._tasks.append(asyncio.create_task(self._demo_loop()))
            _logger.warning(
                "push.demo.start",
                "Demo activity is enabled; viewers will receive simulated events",
                interval_seconds=self._demo_interval,
            )

    async def stop(self) -> None:
        self._stop.set()
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for subscription in list(self._subscribers.values()):
            self.unsubscribe(subscription)
        _logger.info("push.stop", "Stopped push relay")

    async def _wait(self, interval: float) -> bool:
        """Sleep for ``interval``; return True when the relay is stopping."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _stats_loop(self) -> None:
        while not self._stop.is_set():
            if await self._wait(self._stats_interval):
                break
            try:
                await self.tick_stats()
                record_runtime_loop(loop="stats", ok=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_runtime_loop(loop="stats", ok=False)
                _logger.error(
                    "push.stats.error",
                    "Stats refresh tick failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def _demo_loop(self) -> None:
        while not self._stop.is_set():
            if await self._wait(self._demo_interval):
                break
            self.emit_demo_activity()
            record_runtime_loop(loop="demo_activity", ok=True)

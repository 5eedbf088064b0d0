from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

from headscale_admin.utils import as_bool


@dataclass(frozen=True)
class SnapshotHealth:
    nodes: bool = True
    users: bool = True
    preauth_keys: bool = True

    @property
    def degraded(self) -> bool:
        return not (self.nodes and self.users and self.preauth_keys)


@dataclass(frozen=True)
class Snapshot:
    total_nodes: int = 0
    online_nodes: int = 0
    total_users: int = 0
    total_preauth_keys: int = 0
    health: SnapshotHealth = field(default_factory=SnapshotHealth, compare=False)

    def to_payload(self, *, include_health: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "totalNodes": self.total_nodes,
            "onlineNodes": self.online_nodes,
            "totalUsers": self.total_users,
            "totalPreauthKeys": self.total_preauth_keys,
        }
        if include_health:
            payload["health"] = {
                "nodes": self.health.nodes,
                "users": self.health.users,
                "preauthKeys": self.health.preauth_keys,
            }
        return payload



def _is_online(item: Any) -> bool:
    return isinstance(item, dict) and bool(as_bool(item.get("online")))


def fold_snapshot(
    nodes: Optional[Sequence[Any]],
    users: Optional[Sequence[Any]],
    preauth_keys: Optional[Sequence[Any]],
) -> Snapshot:
    """Fold three list results into counts; ``None`` marks a failed call."""
    return Snapshot(
        total_nodes=len(nodes) if nodes is not None else 0,
        online_nodes=sum(1 for item in nodes if _is_online(item)) if nodes is not None else 0,
        total_users=len(users) if users is not None else 0,
        total_preauth_keys=len(preauth_keys) if preauth_keys is not None else 0,
        health=SnapshotHealth(
            nodes=nodes is not None,
            users=users is not None,
            preauth_keys=preauth_keys is not None,
        ),
    )

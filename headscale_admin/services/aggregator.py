from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from headscale_admin.logger import get_logger
from headscale_admin.metrics import record_snapshot_refresh
from headscale_admin.schemas.headscale import Node, PreauthKey, User
from headscale_admin.services.snapshot_cache import SnapshotCache
from headscale_admin.services.snapshots import Snapshot, fold_snapshot
from headscale_admin.services.upstream import ControlApiClient, UpstreamError, UpstreamErrorKind
from headscale_admin.utils import split_tags

_logger = get_logger("services.aggregator")

DEFAULT_PREAUTH_KEY_EXPIRATION = "24h"

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def unwrap_list(payload: Any, envelope: str) -> Optional[List[Any]]:
    """Accept a bare JSON array or an ``{envelope: [...]}`` object."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        value = payload.get(envelope)
        if isinstance(value, list):
            return value
        if value is None and not payload:
            return []
    if payload is None:
        return []
    return None


def unwrap_entity(payload: Any, envelope: str) -> Optional[Dict[str, Any]]:
    if isinstance(payload, dict):
        inner = payload.get(envelope)
        if isinstance(inner, dict):
            return inner
        if "id" in payload:
            return payload
    return None


def _parse_many(model: Type[_ModelT], items: Sequence[Any], resource: str) -> List[_ModelT]:
    parsed: List[_ModelT] = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            _logger.warning(
                "aggregator.parse.skip",
                "Skipped malformed upstream entity",
                resource=resource,
                errors=exc.error_count(),
            )
    return parsed


@dataclass(frozen=True)
class UserDetail:
    user: User
    nodes: List[Node]
    preauth_keys: List[PreauthKey]


@dataclass(frozen=True)
class SnapshotRefresh:
    snapshot: Snapshot
    sequence: int
    accepted: bool
    nodes: Optional[List[Node]] = None


class Aggregator:
    """Fans out to the control API and folds results into one read model."""

    def __init__(self, client: ControlApiClient, cache: Optional[SnapshotCache] = None) -> None:
        self._client = client
        self._cache = cache if cache is not None else SnapshotCache()

    @property
    def cache(self) -> SnapshotCache:
        return self._cache

    async def _settle(self, calls: Mapping[str, Awaitable[Any]]) -> Dict[str, Any]:
        """Await every call; failed calls map to their ``UpstreamError``."""
        names = list(calls)
        results = await asyncio.gather(*calls.values(), return_exceptions=True)
        settled: Dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception) and not isinstance(result, UpstreamError):
                _logger.error(
                    "aggregator.call.error",
                    "Unexpected failure in fan-out call",
                    call=name,
                    error_type=type(result).__name__,
                    error=str(result),
                )
            settled[name] = result
        return settled

    def _list_or_none(
        self, settled: Mapping[str, Any], name: str, envelope: str
    ) -> Optional[List[Any]]:
        result = settled[name]
        if isinstance(result, Exception):
            _logger.warning(
                "aggregator.call.failed",
                "Fan-out call failed; using empty value",
                call=name,
                error=str(result),
            )
            return None
        items = unwrap_list(result, envelope)
        if items is None:
            _logger.warning(
                "aggregator.call.shape",
                "Unexpected response shape; using empty value",
                call=name,
                payload_type=type(result).__name__,
            )
        return items

    async def _collect_snapshot(self) -> tuple[Snapshot, Optional[List[Any]]]:
        settled = await self._settle(
            {
                "nodes": self._client.get("node"),
                "users": self._client.get("user"),
                "preauth_keys": self._client.get("preauthkey"),
            }
        )
        nodes = self._list_or_none(settled, "nodes", "nodes")
        users = self._list_or_none(settled, "users", "users")
        keys = self._list_or_none(settled, "preauth_keys", "preAuthKeys")
        return fold_snapshot(nodes, users, keys), nodes

    async def fetch_snapshot(self) -> Snapshot:
        """Never raises for upstream failures; failed fields read as zero."""
        snapshot, _ = await self._collect_snapshot()
        return snapshot

    async def refresh_snapshot(self) -> SnapshotRefresh:
        sequence = self._cache.next_sequence()
        async with _logger.operation(
            "snapshot.refresh", "Refreshed snapshot", sequence=sequence
        ) as op:
            snapshot, raw_nodes = await self._collect_snapshot()
            accepted = self._cache.set(snapshot, sequence=sequence)
            if accepted:
                op.step(
                    "cache.write",
                    "Stored snapshot",
                    total_nodes=snapshot.total_nodes,
                    online_nodes=snapshot.online_nodes,
                    degraded=snapshot.health.degraded,
                )
            else:
                op.step_warning(
                    "cache.stale",
                    "Discarded stale snapshot",
                    current_sequence=self._cache.sequence,
                )
        record_snapshot_refresh(
            result="degraded" if snapshot.health.degraded else "ok",
        )
        nodes = _parse_many(Node, raw_nodes, "node") if raw_nodes is not None else None
        current = self._cache.get() or snapshot
        return SnapshotRefresh(snapshot=current, sequence=sequence, accepted=accepted, nodes=nodes)

    async def current_snapshot(self) -> Snapshot:
        """Refresh on demand for a render and return what the cache holds."""
        refresh = await self.refresh_snapshot()
        return refresh.snapshot

    async def fetch_user_detail(self, user_id: str) -> Optional[UserDetail]:
        """Return ``None`` when the user itself cannot be fetched."""
        settled = await self._settle(
            {
                "user": self._client.get(f"user/{user_id}"),
                "nodes": self._client.get(f"user/{user_id}/node"),
                "preauth_keys": self._client.get(f"user/{user_id}/preauthkey"),
            }
        )
        user_result = settled["user"]
        if isinstance(user_result, Exception):
            _logger.info(
                "aggregator.user.missing",
                "User lookup failed; reporting not found",
                user_id=user_id,
                error=str(user_result),
            )
            return None
        user_payload = unwrap_entity(user_result, "user")
        if user_payload is None:
            return None
        try:
            user = User.model_validate(user_payload)
        except ValidationError:
            return None

        nodes = self._list_or_none(settled, "nodes", "nodes") or []
        keys = self._list_or_none(settled, "preauth_keys", "preAuthKeys") or []
        return UserDetail(
            user=user,
            nodes=_parse_many(Node, nodes, "user/node"),
            preauth_keys=_parse_many(PreauthKey, keys, "user/preauthkey"),
        )

    async def _fetch_list(self, resource: str, envelope: str, model: Type[_ModelT]) -> List[_ModelT]:
        payload = await self._client.get(resource)
        items = unwrap_list(payload, envelope) or []
        return _parse_many(model, items, resource)

    async def fetch_node_list(self) -> List[Node]:
        return await self._fetch_list("node", "nodes", Node)

    async def fetch_user_list(self) -> List[User]:
        return await self._fetch_list("user", "users", User)

    async def fetch_preauth_key_list(self) -> List[PreauthKey]:
        return await self._fetch_list("preauthkey", "preAuthKeys", PreauthKey)

    async def _fetch_entity(self, resource: str, envelope: str, model: Type[_ModelT]) -> _ModelT:
        payload = await self._client.get(resource)
        entity = unwrap_entity(payload, envelope)
        if entity is None:
            raise _shape_error(resource)
        try:
            return model.model_validate(entity)
        except ValidationError as exc:
            _logger.warning(
                "aggregator.parse.failed",
                "Rejected malformed upstream entity",
                resource=resource,
                errors=exc.error_count(),
            )
            raise _shape_error(resource) from exc

    async def fetch_node(self, node_id: str) -> Node:
        return await self._fetch_entity(f"node/{node_id}", "node", Node)

    async def fetch_user(self, user_id: str) -> User:
        return await self._fetch_entity(f"user/{user_id}", "user", User)

    async def fetch_status(self) -> Any:
        return await self._client.get("status")

    async def rename_node(self, node_id: str, name: str) -> Any:
        clean = _required_name(name, "Node name")
        return await self._mutate("POST", f"node/{node_id}/rename", {"name": clean})

    async def retag_node(self, node_id: str, tags: Any) -> Any:
        return await self._mutate("POST", f"node/{node_id}/tags", {"tags": split_tags(tags)})

    async def delete_node(self, node_id: str) -> Any:
        return await self._mutate("DELETE", f"node/{node_id}")

    async def expire_node(self, node_id: str) -> Any:
        return await self._mutate("POST", f"node/{node_id}/expire", {})

    async def create_user(self, name: str) -> Any:
        return await self._mutate("POST", "user", {"name": _required_name(name, "User name")})

    async def update_user(self, user_id: str, name: str) -> Any:
        clean = _required_name(name, "User name")
        return await self._mutate("PUT", f"user/{user_id}", {"name": clean})

    async def delete_user(self, user_id: str) -> Any:
        return await self._mutate("DELETE", f"user/{user_id}")

    async def create_preauth_key(
        self,
        user_id: str,
        *,
        expiration: Optional[str] = None,
        reusable: bool = False,
        tags: Any = None,
    ) -> Optional[PreauthKey]:
        payload = await self._mutate(
            "POST",
            "preauthkey",
            {
                "user": user_id,
                "expiration": (expiration or "").strip() or DEFAULT_PREAUTH_KEY_EXPIRATION,
                "reusable": bool(reusable),
                "tags": split_tags(tags),
            },
        )
        entity = unwrap_entity(payload, "preAuthKey")
        if entity is None:
            return None
        try:
            return PreauthKey.model_validate(entity)
        except ValidationError:
            return None

    async def _mutate(self, method: str, resource: str, body: Any = None) -> Any:
        async with _logger.operation(
            "control.mutate", "Forwarded mutation", method=method, resource=resource
        ):
            return await self._client.request(method, resource, body)


def _required_name(value: str, label: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValueError(f"{label} is required")
    return clean


def _shape_error(resource: str) -> UpstreamError:
    return UpstreamError(UpstreamErrorKind.UPSTREAM_FAULT, resource, "Unexpected response shape")

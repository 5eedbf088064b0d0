"""Presentation adapters for upstream entities.

The aggregator hands out parsed timestamps untouched. JSON consumers get ISO
8601 strings and HTML consumers get display strings; a missing or
unparseable timestamp becomes ``None`` or the placeholder, never an error.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from headscale_admin.schemas.headscale import Node, PreauthKey, User
from headscale_admin.utils import parse_timestamp

DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def format_iso(value: Any) -> Optional[str]:
    timestamp = parse_timestamp(value)
    if timestamp is None:
        return None
    return timestamp.isoformat().replace("+00:00", "Z")


def format_display(value: Any, placeholder: str = "-") -> str:
    timestamp = parse_timestamp(value)
    if timestamp is None:
        return placeholder
    return timestamp.strftime(DISPLAY_FORMAT)


def node_to_json(node: Node) -> Dict[str, Any]:
    return {
        "id": node.id,
        "name": node.name,
        "givenName": node.given_name,
        "online": node.online,
        "lastSeen": format_iso(node.last_seen),
        "createdAt": format_iso(node.created_at),
        "expiry": format_iso(node.expiry),
        "tags": list(node.tags),
        "user": {"id": node.user_id, "name": node.user_name} if node.user_id else None,
        "ipAddresses": list(node.ip_addresses),
    }


def user_to_json(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "displayName": user.display_name,
        "email": user.email,
        "createdAt": format_iso(user.created_at),
    }


def preauth_key_to_json(key: PreauthKey) -> Dict[str, Any]:
    return {
        "id": key.id,
        "user": key.user,
        "key": key.key,
        "reusable": key.reusable,
        "ephemeral": key.ephemeral,
        "used": key.used,
        "expiration": format_iso(key.expiration),
        "createdAt": format_iso(key.created_at),
        "aclTags": list(key.acl_tags),
    }


def node_to_view(node: Node) -> Dict[str, Any]:
    return {
        "id": node.id,
        "name": node.display_name,
        "hostname": node.name,
        "online": node.online,
        "last_seen": format_display(node.last_seen, "Never"),
        "created_at": format_display(node.created_at, "Unknown"),
        "expiry": format_display(node.expiry, "Never"),
        "tags": list(node.tags),
        "tags_csv": ", ".join(node.tags),
        "user_id": node.user_id,
        "user_name": node.user_name or "-",
        "ip_addresses": list(node.ip_addresses),
    }


def user_to_view(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "display_name": user.display_name or user.name,
        "email": user.email or "",
        "created_at": format_display(user.created_at, "Unknown"),
    }


def preauth_key_to_view(key: PreauthKey) -> Dict[str, Any]:
    return {
        "id": key.id,
        "key": key.key,
        "reusable": key.reusable,
        "ephemeral": key.ephemeral,
        "used": key.used,
        "expiration": format_display(key.expiration, "Never"),
        "created_at": format_display(key.created_at, "Unknown"),
        "tags": ", ".join(key.acl_tags),
    }

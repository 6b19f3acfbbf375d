"""Field-name priority tables and per-backend field mappings.

Defines:
- FIELD_SOURCES: for each entity type, the ordered list of raw field names that
  resolve to each canonical field. The first non-empty value wins.
- SQL_COLUMN_MAP: canonical wire name -> column name in the relational store,
  used when writing (reads go through FIELD_SOURCES like every other backend).
- to_document_fields() / from_document_fields(): convert between plain dicts and
  the typed value wrappers of the REST document store.
"""

from __future__ import annotations

import base64
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from src.salesops.records.schemas import EntityType

# ── Inbound priority tables ─────────────────────────────────────────────────
# Order matters: canonical camelCase first, then relational column spellings,
# then the legacy CSV headers.

FIELD_SOURCES: dict[EntityType, dict[str, tuple[str, ...]]] = {
    EntityType.DEALS: {
        "id": ("id", "_id", "documentId", "docId"),
        "deal_ref": ("dealRef", "DealID", "dealId", "deal_id", "deal_ref", "DEAL_ID"),
        "customer_name": ("customerName", "customer_name", "customer", "CUSTOMER_NAME"),
        "amount_paid": ("amountPaid", "amount_paid", "amount", "totalAmount", "AMOUNT"),
        "sales_agent_id": (
            "salesAgentId", "SalesAgentID", "sales_agent_id", "sales_agent_norm", "sales_agent",
        ),
        "sales_agent_name": ("salesAgentName", "salesAgent", "sales_agent_name", "sales_agent"),
        "closing_agent_id": (
            "closingAgentId", "ClosingAgentID", "closing_agent_id", "closing_agent_norm",
            "closing_agent",
        ),
        "sales_team": ("salesTeam", "sales_team", "team", "teamName"),
        "service_tier": ("serviceTier", "service_tier", "type_service", "TYPE_SERVISE", "product_type"),
        "status": ("status", "dealStatus", "deal_status"),
        "signup_date": ("signupDate", "signup_date", "date"),
        "created_at": ("createdAt", "created_at", "timestamp"),
    },
    EntityType.CALLBACKS: {
        "id": ("id", "_id", "documentId", "callbackId"),
        "customer_name": ("customerName", "customer_name", "customer"),
        "phone": ("phone", "phoneNumber", "phone_number", "contact"),
        "email": ("email", "customerEmail", "customer_email"),
        "sales_agent_id": ("salesAgentId", "SalesAgentID", "sales_agent_id", "sales_agent"),
        "sales_agent_name": ("salesAgentName", "sales_agent_name", "sales_agent"),
        "sales_team": ("salesTeam", "sales_team", "team"),
        "first_call_date": ("firstCallDate", "first_call_date"),
        "first_call_time": ("firstCallTime", "first_call_time"),
        "reason": ("reason", "callbackReason", "callback_reason"),
        "notes": ("notes", "callbackNotes", "callback_notes"),
        "status": ("status", "callbackStatus"),
        "created_by_id": ("createdById", "created_by_id", "createdBy", "created_by"),
        "created_at": ("createdAt", "created_at"),
    },
    EntityType.TARGETS: {
        "id": ("id", "_id", "targetId", "documentId"),
        "agent_id": ("agentId", "salesAgentId", "agent_id", "SalesAgentID"),
        "agent_name": ("agentName", "salesAgentName", "agent_name"),
        "manager_id": ("managerId", "manager_id"),
        "monthly_target": (
            "monthlyTarget", "targetAmount", "targetRevenue", "target_revenue", "monthly_target",
        ),
        "deals_target": ("dealsTarget", "targetDeals", "deals_target"),
        "period": ("period", "month"),
        "current_sales": ("currentSales", "currentAmount", "current_sales"),
        "current_deals": ("currentDeals", "current_deals"),
        "created_at": ("createdAt", "created_at"),
        "updated_at": ("updatedAt", "updated_at", "lastUpdated"),
    },
    EntityType.NOTIFICATIONS: {
        "id": ("id", "_id", "notificationId", "documentId"),
        "title": ("title", "subject"),
        "message": ("message", "body", "text"),
        "recipients": ("recipients", "to"),
        "notification_type": ("type", "notificationType", "category"),
        "priority": ("priority",),
        "read": ("read", "isRead", "is_read"),
        "timestamp": ("timestamp", "created_at", "createdAt"),
    },
    EntityType.USERS: {
        "id": ("id", "_id", "uid", "userId"),
        "name": ("name", "username", "displayName", "full_name"),
        "role": ("role", "userRole"),
        "team_id": ("teamId", "team", "managedTeam", "salesTeam", "sales_team"),
    },
}


# ── Relational store column names (outbound) ────────────────────────────────

SQL_TABLES: dict[EntityType, str] = {
    EntityType.DEALS: "deals",
    EntityType.CALLBACKS: "callbacks",
    EntityType.TARGETS: "targets",
    EntityType.NOTIFICATIONS: "notifications",
    EntityType.USERS: "users",
}

SQL_COLUMN_MAP: dict[EntityType, dict[str, str]] = {
    EntityType.DEALS: {
        "id": "id",
        "dealRef": "DealID",
        "customerName": "customerName",
        "amountPaid": "amountPaid",
        "salesAgentId": "SalesAgentID",
        "salesAgentName": "salesAgentName",
        "closingAgentId": "ClosingAgentID",
        "salesTeam": "salesTeam",
        "serviceTier": "serviceTier",
        "status": "status",
        "signupDate": "signupDate",
        "createdAt": "created_at",
    },
    EntityType.CALLBACKS: {
        "id": "id",
        "customerName": "customer_name",
        "phone": "phone_number",
        "email": "email",
        "salesAgentId": "SalesAgentID",
        "salesAgentName": "sales_agent",
        "salesTeam": "sales_team",
        "firstCallDate": "first_call_date",
        "firstCallTime": "first_call_time",
        "reason": "callback_reason",
        "notes": "callback_notes",
        "status": "status",
        "createdById": "created_by_id",
        "createdAt": "created_at",
    },
    EntityType.TARGETS: {
        "id": "id",
        "agentId": "agentId",
        "agentName": "agentName",
        "managerId": "managerId",
        "monthlyTarget": "monthlyTarget",
        "dealsTarget": "dealsTarget",
        "period": "period",
        "currentSales": "currentSales",
        "currentDeals": "currentDeals",
        "status": "status",
        "createdAt": "created_at",
        "updatedAt": "updated_at",
    },
    EntityType.NOTIFICATIONS: {
        "id": "id",
        "title": "title",
        "message": "message",
        "recipients": "to",
        "type": "type",
        "priority": "priority",
        "read": "isRead",
        "timestamp": "timestamp",
    },
    EntityType.USERS: {
        "id": "id",
        "name": "name",
        "role": "role",
        "teamId": "team",
    },
}


def to_sql_row(entity_type: EntityType, wire: dict[str, Any]) -> dict[str, Any]:
    """Rename canonical wire fields to relational column names.

    Fields without a column mapping are dropped.
    """
    column_map = SQL_COLUMN_MAP[entity_type]
    return {column_map[key]: value for key, value in wire.items() if key in column_map}


# ── Document store value codec ──────────────────────────────────────────────


def to_document_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a plain dict to the document store ``fields`` format.

    Args:
        data: Dict of field names to plain Python values.

    Returns:
        Dict suitable for the ``fields`` member of a document body.
    """
    return {name: _encode_value(value) for name, value in data.items()}


def from_document_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert a document ``fields`` map back to a plain dict."""
    return {name: _decode_value(value) for name, value in fields.items()}


def _encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, Decimal):
        # Kept as a string so stored amounts never pass through binary floats
        return {"stringValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return {"timestampValue": aware.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")}
    if isinstance(value, date):
        return {"stringValue": value.isoformat()}
    if isinstance(value, (list, tuple, set)):
        return {"arrayValue": {"values": [_encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": to_document_fields(value)}}
    if isinstance(value, bytes):
        return {"bytesValue": base64.b64encode(value).decode("ascii")}
    return {"stringValue": str(value)}


def _decode_value(wrapped: dict[str, Any]) -> Any:
    """Extract a Python value from a typed value wrapper.

    Unknown wrappers decode to None.
    """
    if "stringValue" in wrapped:
        return wrapped["stringValue"]
    if "integerValue" in wrapped:
        return int(wrapped["integerValue"])
    if "doubleValue" in wrapped:
        return wrapped["doubleValue"]
    if "booleanValue" in wrapped:
        return wrapped["booleanValue"]
    if "timestampValue" in wrapped:
        return wrapped["timestampValue"]
    if "nullValue" in wrapped:
        return None
    if "arrayValue" in wrapped:
        return [_decode_value(v) for v in wrapped["arrayValue"].get("values", [])]
    if "mapValue" in wrapped:
        return from_document_fields(wrapped["mapValue"].get("fields", {}))
    if "referenceValue" in wrapped:
        return wrapped["referenceValue"]
    if "bytesValue" in wrapped:
        return base64.b64decode(wrapped["bytesValue"])
    return None

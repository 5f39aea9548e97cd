"""wabridge – Tenant administration endpoints.

Auto-reply rules, AI settings, conversation labels, scheduled broadcasts
and the sales ledger. Rule and setting changes take effect immediately:
the tenant's matcher and AI profile are reloaded after each write.
"""

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException

from wabridge.gateway.dependencies import Gateway, get_gateway
from wabridge.gateway.schemas import (
    AutoReplyRuleRequest,
    LabelRequest,
    ScheduleBroadcastRequest,
    TenantSettingRequest,
)

router = APIRouter(prefix="/admin/{tenant_id}", tags=["admin"])
logger = structlog.get_logger()


# ──────────────────────────────────────────
# Auto-reply rules
# ──────────────────────────────────────────

@router.get("/rules")
async def list_rules(tenant_id: str, gw: Gateway = Depends(get_gateway)) -> list[dict[str, str]]:
    rules = await asyncio.to_thread(gw.persistence.list_auto_reply_rules, tenant_id)
    return [{"keyword": keyword, "response": response} for keyword, response in rules]


@router.put("/rules")
async def upsert_rule(
    tenant_id: str,
    body: AutoReplyRuleRequest,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, str]:
    await asyncio.to_thread(gw.persistence.upsert_auto_reply_rule, tenant_id, body.keyword, body.response)
    await gw.arbitrator.reload_rules(tenant_id)
    logger.info("admin.rule_saved", tenant_id=tenant_id, keyword=body.keyword)
    return {"status": "ok"}


@router.delete("/rules/{keyword}")
async def delete_rule(tenant_id: str, keyword: str, gw: Gateway = Depends(get_gateway)) -> dict[str, str]:
    deleted = await asyncio.to_thread(gw.persistence.delete_auto_reply_rule, tenant_id, keyword)
    if not deleted:
        raise HTTPException(status_code=404, detail="Rule not found")
    await gw.arbitrator.reload_rules(tenant_id)
    return {"status": "deleted"}


# ──────────────────────────────────────────
# Settings
# ──────────────────────────────────────────

@router.get("/settings")
async def get_tenant_settings(tenant_id: str, gw: Gateway = Depends(get_gateway)) -> dict[str, str]:
    return await asyncio.to_thread(gw.persistence.get_settings_map, tenant_id)


@router.put("/settings/{key}")
async def put_tenant_setting(
    tenant_id: str,
    key: str,
    body: TenantSettingRequest,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, str]:
    await asyncio.to_thread(gw.persistence.upsert_setting, tenant_id, key, body.value)
    await gw.arbitrator.reload_rules(tenant_id)
    return {"status": "ok"}


# ──────────────────────────────────────────
# Conversations
# ──────────────────────────────────────────

@router.put("/conversations/{remote_jid}/label")
async def set_label(
    tenant_id: str,
    remote_jid: str,
    body: LabelRequest,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, str]:
    found = await asyncio.to_thread(gw.persistence.set_conversation_label, tenant_id, remote_jid, body.label)
    if not found:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"status": "ok"}


# ──────────────────────────────────────────
# Scheduled broadcasts
# ──────────────────────────────────────────

@router.post("/broadcasts/scheduled", status_code=201)
async def schedule_broadcast(
    tenant_id: str,
    body: ScheduleBroadcastRequest,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, Any]:
    broadcast_id = await asyncio.to_thread(
        gw.persistence.create_scheduled_broadcast,
        tenant_id,
        body.message,
        body.scheduled_at,
        title=body.title,
        target_label=body.target_label,
        manual_numbers=body.manual_numbers,
    )
    logger.info("admin.broadcast_scheduled", tenant_id=tenant_id, broadcast_id=broadcast_id)
    return {"id": broadcast_id, "status": "PENDING"}


@router.get("/broadcasts/scheduled/{broadcast_id}")
async def scheduled_broadcast_status(
    tenant_id: str,
    broadcast_id: int,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, Any]:
    status = await asyncio.to_thread(gw.persistence.get_broadcast_status, broadcast_id)
    if status is None or status["tenant_id"] != tenant_id:
        raise HTTPException(status_code=404, detail="Broadcast not found")
    return status


# ──────────────────────────────────────────
# Sales
# ──────────────────────────────────────────

@router.get("/sales")
async def list_sales(tenant_id: str, gw: Gateway = Depends(get_gateway)) -> list[dict[str, Any]]:
    return await asyncio.to_thread(gw.persistence.list_sales, tenant_id)

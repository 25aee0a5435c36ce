"""
Built-in node handlers.

Responsibility:
- Trigger nodes (manual, webhook, schedule) stamp the run start
- HTTP action node performs the request with httpx
- Email/database actions return their queued contract; transports are external
- Logic nodes (condition/if, switch) select an outgoing branch
- Transform nodes (set, map, merge, filter, delay, code) reshape data
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from execution.dispatch import NodeContext, NodeResult
from registry.node_registry import NodeHandlerRegistry
from shared.config import EngineSettings, load_settings
from shared.errors import NodeExecutionError
from shared.expressions import ExpressionContext, evaluate, is_expression, truthy
from shared.workflow_contracts import SWITCH_DEFAULT_HANDLE

logger = logging.getLogger(__name__)

MERGE_MODES = ("append", "combine")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Triggers ──────────────────────────────────────────────────


def manual_trigger(context: NodeContext) -> dict[str, Any]:
    logger.info("Manual trigger activated: %s", context.node.id)
    payload = context.config.get("payload")
    return {"triggered": True, "timestamp": _timestamp(), **(payload if isinstance(payload, dict) else {})}


def webhook_trigger(context: NodeContext) -> dict[str, Any]:
    config = context.config
    return {
        "webhook": config.get("webhookPath") or config.get("path"),
        "method": str(config.get("method") or "POST").upper(),
        "body": config.get("body"),
        "timestamp": _timestamp(),
    }


def schedule_trigger(context: NodeContext) -> dict[str, Any]:
    return {"schedule": context.config.get("schedule"), "timestamp": _timestamp()}


# ─── Actions ───────────────────────────────────────────────────


class HttpRequestHandler:
    """Performs the request described by an ``action/http`` node."""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, context: NodeContext) -> dict[str, Any]:
        config = context.config
        url = str(config.get("url") or "").strip()
        if not url:
            raise NodeExecutionError("HTTP node requires a 'url'", node_id=context.node.id)
        method = str(config.get("method") or "GET").upper()

        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        token = context.credentials.get("token") or context.credentials.get("api_key")
        if token and "Authorization" not in headers:
            headers["Authorization"] = f"Bearer {token}"

        request_kwargs: dict[str, Any] = {"headers": headers}
        if config.get("query"):
            request_kwargs["params"] = config["query"]
        body = config.get("body")
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        timeout = float(config.get("timeoutSeconds") or self.timeout)
        logger.info("HTTP node %s: %s %s", context.node.id, method, url)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.RequestError as e:
            logger.error("Network error calling '%s': %r", url, e)
            raise NodeExecutionError(f"Network error: {e}", node_id=context.node.id) from e

        if response.status_code >= 400 and not config.get("allowErrorStatus"):
            logger.error("HTTP node %s got status %s: %s", context.node.id, response.status_code, response.text[:200])
            raise NodeExecutionError(f"HTTP {response.status_code} from {url}", node_id=context.node.id)

        return {
            "url": url,
            "method": method,
            "status": response.status_code,
            "headers": dict(response.headers),
            "data": _decode_body(response),
        }


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def email_action(context: NodeContext) -> dict[str, Any]:
    config = context.config
    logger.info("Email queued for %s", config.get("to"))
    return {"to": config.get("to"), "subject": config.get("subject"), "status": "queued"}


def database_action(context: NodeContext) -> dict[str, Any]:
    return {"query": context.config.get("query"), "params": context.config.get("params"), "status": "queued"}


# ─── Logic ─────────────────────────────────────────────────────


def condition_node(context: NodeContext) -> NodeResult:
    """Branch on ``condition``.

    A plain string (no ``{{ }}``) is evaluated as a predicate over ``$input``
    and ``$vars``; a missing or blank condition is true.
    """
    raw = context.node.config.get("condition")
    resolved = context.config.get("condition", True)
    if isinstance(raw, str) and not is_expression(raw):
        source = raw.strip() or "true"
        scope = ExpressionContext(
            variables=context.variables,
            input=context.input,
            execution={"id": context.execution_id, "workflowId": context.workflow_id},
        )
        resolved = evaluate("{{ " + source + " }}", scope)
    result = truthy(resolved)
    return NodeResult(data={"condition": result, "input": context.input}, branch=result)


def switch_node(context: NodeContext) -> NodeResult:
    config = context.config
    value = config["value"] if "value" in config else context.input
    cases = config.get("cases") or []
    for idx, case in enumerate(cases):
        if isinstance(case, dict) and case.get("value") == value:
            return NodeResult(data={"value": value, "case": case.get("label", str(idx))}, branch=str(idx))
    return NodeResult(data={"value": value, "case": SWITCH_DEFAULT_HANDLE}, branch=SWITCH_DEFAULT_HANDLE)


# ─── Transforms ────────────────────────────────────────────────


def set_transform(context: NodeContext) -> Any:
    values = context.config.get("values")
    if values is None:
        return context.input
    if isinstance(values, dict) and isinstance(context.input, dict) and context.config.get("keepInput"):
        return {**context.input, **values}
    return values


def map_transform(context: NodeContext) -> Any:
    values = context.config.get("values") or {}
    items = context.input
    if isinstance(items, list):
        return [{**item, **values} if isinstance(item, dict) else item for item in items]
    if isinstance(items, dict):
        return {**items, **values}
    return items


def merge_transform(context: NodeContext) -> Any:
    """Merge the outputs of every live predecessor (in predecessor order)."""
    mode = str(context.config.get("mode") or "append")
    if mode not in MERGE_MODES:
        raise NodeExecutionError(f"Unknown merge mode '{mode}'", node_id=context.node.id)

    values = list(context.inputs.values())
    if mode == "combine":
        merged: dict[str, Any] = {}
        for value in values:
            if isinstance(value, dict):
                merged.update(value)
        return merged

    collected: list[Any] = []
    for value in values:
        if isinstance(value, list):
            collected.extend(value)
        else:
            collected.append(value)
    return collected


def filter_transform(context: NodeContext) -> Any:
    config = context.config
    items = config.get("items", context.input)
    if not isinstance(items, list):
        return items
    field = config.get("field")
    if not field:
        return [item for item in items if truthy(item)]
    expected = config.get("equals")
    return [item for item in items if isinstance(item, dict) and item.get(field) == expected]


async def delay_transform(context: NodeContext) -> Any:
    ms = float(context.config.get("ms") or 0)
    if ms > 0:
        await asyncio.sleep(ms / 1000.0)
    return context.input


def code_transform(context: NodeContext) -> Any:
    # ``expression`` is a ``{{ }}`` value, already evaluated when the config was resolved.
    if "expression" not in context.config:
        return context.input
    return context.config["expression"]


# ─── Registration ──────────────────────────────────────────────


def register_builtin_handlers(
    registry: NodeHandlerRegistry,
    settings: EngineSettings | None = None,
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> NodeHandlerRegistry:
    settings = settings or load_settings()

    registry.register("trigger", "manual", manual_trigger)
    registry.register("trigger", "webhook", webhook_trigger)
    registry.register("trigger", "schedule", schedule_trigger)

    registry.register("action", "http", HttpRequestHandler(settings.http_timeout_seconds, http_transport))
    registry.register("action", "email", email_action)
    registry.register("action", "database", database_action)

    registry.register("logic", "condition", condition_node)
    registry.register("logic", "if", condition_node)
    registry.register("logic", "switch", switch_node)

    registry.register("transform", "set", set_transform)
    registry.register("transform", "map", map_transform)
    registry.register("transform", "merge", merge_transform)
    registry.register("transform", "filter", filter_transform)
    registry.register("transform", "delay", delay_transform)
    registry.register("transform", "code", code_transform)
    return registry


def build_default_registry(
    settings: EngineSettings | None = None,
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> NodeHandlerRegistry:
    return register_builtin_handlers(NodeHandlerRegistry(), settings, http_transport=http_transport)

"""
AgentOS Built-in Tools

Tools available to agents through the sandbox. Each declares the single
permission it needs; the sandbox enforces it against the caller's tier.
"""

from __future__ import annotations

import ast
import asyncio
import ipaddress
import operator
import socket
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx
import structlog

from agentos.kernel.sandbox import SandboxContext, Tool
from agentos.models.agent import ToolPermission, ToolSpec

if TYPE_CHECKING:
    from agentos.services.ledger import LedgerService

logger = structlog.get_logger(__name__)


# =============================================================================
# calculator
# =============================================================================

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}

MAX_EXPRESSION_LENGTH = 200
MAX_EXPONENT = 100
MAX_RESULT_BITS = 4096


def _bits(value: int | float) -> int:
    if isinstance(value, float):
        return 0
    return max(1, abs(value).bit_length())


def _checked(value: int | float) -> int | float:
    if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
        raise ValueError("Result too large")
    return value


def safe_eval(expression: str) -> int | float:
    """
    Evaluate an arithmetic expression.

    Only numeric literals, + - * / // % ** and parentheses are accepted.

    Raises:
        ValueError: On anything else, or an oversized expression, exponent or result
    """
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ValueError("Expression too long")
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ValueError("Invalid expression") from e

    def _eval(node: ast.AST) -> int | float:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and type(node.value) in (int, float):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            left, right = _eval(node.left), _eval(node.right)
            if isinstance(node.op, ast.Pow):
                if abs(right) > MAX_EXPONENT:
                    raise ValueError("Exponent too large")
                if abs(right) * _bits(left) > MAX_RESULT_BITS:
                    raise ValueError("Result too large")
            elif isinstance(node.op, ast.Mult) and _bits(left) + _bits(right) > MAX_RESULT_BITS:
                raise ValueError("Result too large")
            return _checked(_BIN_OPS[type(node.op)](left, right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](_eval(node.operand))
        raise ValueError(f"Unsupported expression element: {type(node).__name__}")

    try:
        return _eval(tree)
    except ZeroDivisionError as e:
        raise ValueError("Division by zero") from e
    except OverflowError as e:
        raise ValueError("Result too large") from e


async def _calculator(arguments: dict[str, Any], context: SandboxContext) -> str:
    expression = str(arguments.get("expression", "")).strip()
    if not expression:
        raise ValueError("'expression' is required")
    return str(safe_eval(expression))


async def _current_time(arguments: dict[str, Any], context: SandboxContext) -> str:
    return datetime.now(UTC).isoformat()


# =============================================================================
# memory
# =============================================================================


class MemoryStore:
    """Per-DSID key-value memory for agents."""

    MAX_KEYS_PER_DSID = 1000
    MAX_KEY_LENGTH = 128
    MAX_VALUE_LENGTH = 10000

    def __init__(self) -> None:
        self._data: dict[str, dict[str, str]] = defaultdict(dict)

    def put(self, dsid: str, key: str, value: str) -> None:
        if not key or len(key) > self.MAX_KEY_LENGTH:
            raise ValueError(f"Key must be 1-{self.MAX_KEY_LENGTH} characters")
        if len(value) > self.MAX_VALUE_LENGTH:
            raise ValueError(f"Value exceeds {self.MAX_VALUE_LENGTH} characters")
        bucket = self._data[dsid]
        if key not in bucket and len(bucket) >= self.MAX_KEYS_PER_DSID:
            raise ValueError("Memory is full")
        bucket[key] = value

    def get(self, dsid: str, key: str) -> str | None:
        return self._data.get(dsid, {}).get(key)

    def keys(self, dsid: str) -> list[str]:
        return sorted(self._data.get(dsid, {}))

    def clear(self, dsid: str) -> None:
        self._data.pop(dsid, None)


def _memory_tools(store: MemoryStore) -> list[Tool]:
    async def memory_store(arguments: dict[str, Any], context: SandboxContext) -> str:
        key = str(arguments.get("key", ""))
        value = arguments.get("value")
        if value is None:
            raise ValueError("'value' is required")
        store.put(context.dsid, key, str(value))
        return f"stored '{key}'"

    async def memory_recall(arguments: dict[str, Any], context: SandboxContext) -> Any:
        key = arguments.get("key")
        if not key:
            return {"keys": store.keys(context.dsid)}
        value = store.get(context.dsid, str(key))
        return value if value is not None else f"no memory stored under '{key}'"

    return [
        Tool(
            ToolSpec(
                name="memory_store",
                description="Store a value in the agent's persistent memory.",
                permission=ToolPermission.MEMORY_WRITE,
                parameters={"key": "memory key", "value": "text to store"},
            ),
            memory_store,
        ),
        Tool(
            ToolSpec(
                name="memory_recall",
                description="Read a value from memory, or list keys when no key is given.",
                permission=ToolPermission.MEMORY_READ,
                parameters={"key": "memory key (optional)"},
            ),
            memory_recall,
        ),
    ]


# =============================================================================
# http_get
# =============================================================================

Resolver = Callable[[str, int], Awaitable[list[str]]]

BLOCKED_HOSTNAMES = frozenset({"localhost", "metadata.google.internal", "metadata.aws"})


async def resolve_host(hostname: str, port: int) -> list[str]:
    """Resolve a hostname to its IP addresses."""
    loop = asyncio.get_running_loop()
    addr_info = await loop.getaddrinfo(hostname, port, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in addr_info]


async def validate_public_url(url: str, resolver: Resolver = resolve_host) -> str:
    """
    Reject URLs that are not absolute http(s) or that point at a
    loopback, private, link-local or reserved address.

    Raises:
        ValueError: If the URL may not be fetched
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError("Only absolute http(s) URLs are allowed")

    hostname = parsed.hostname.lower()
    if hostname in BLOCKED_HOSTNAMES:
        raise ValueError(f"Blocked hostname: {hostname}")

    try:
        addresses = [str(ipaddress.ip_address(hostname))]
    except ValueError:
        try:
            addresses = await resolver(hostname, parsed.port or (443 if parsed.scheme == "https" else 80))
        except OSError as e:
            raise ValueError(f"Cannot resolve host: {hostname}") from e
    if not addresses:
        raise ValueError(f"Cannot resolve host: {hostname}")

    for address in addresses:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
            ip = ip.ipv4_mapped
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise ValueError(f"Address not allowed: {address}")
    return url


def _http_tool(
    max_bytes: int,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None,
    resolver: Resolver,
) -> Tool:
    async def http_get(arguments: dict[str, Any], context: SandboxContext) -> str:
        url = await validate_public_url(str(arguments.get("url", "")), resolver)

        body = bytearray()
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=False) as client:
            async with client.stream("GET", url) as response:
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) >= max_bytes:
                        break
                status = response.status_code

        text = bytes(body[:max_bytes]).decode("utf-8", errors="replace")
        logger.debug("http_tool_fetched", host=urlparse(url).netloc, status=status, size=len(body))
        return f"HTTP {status}\n\n{text}"

    return Tool(
        ToolSpec(
            name="http_get",
            description="Fetch a URL over HTTP GET and return the status and body.",
            permission=ToolPermission.NETWORK,
            parameters={"url": "absolute http(s) URL"},
        ),
        http_get,
    )


# =============================================================================
# anchor_memory
# =============================================================================


def _anchor_tool(ledger: LedgerService) -> Tool:
    async def anchor_memory(arguments: dict[str, Any], context: SandboxContext) -> dict:
        content = arguments.get("content")
        if not content:
            raise ValueError("'content' is required")
        anchor = await ledger.anchor_memory(
            context.dsid, str(content), label=str(arguments.get("label", ""))
        )
        return {"anchor_id": anchor.id, "content_hash": anchor.content_hash}

    return Tool(
        ToolSpec(
            name="anchor_memory",
            description="Anchor the hash of a piece of memory on the ledger for later proof.",
            permission=ToolPermission.LEDGER_WRITE,
            parameters={"content": "text to anchor", "label": "optional label"},
        ),
        anchor_memory,
    )


def build_default_tools(
    ledger: LedgerService,
    memory: MemoryStore,
    http_max_bytes: int = 65536,
    http_timeout: float = 10.0,
    http_transport: httpx.AsyncBaseTransport | None = None,
    http_resolver: Resolver = resolve_host,
) -> list[Tool]:
    """The standard tool set registered in every sandbox."""
    return [
        Tool(
            ToolSpec(
                name="calculator",
                description="Evaluate an arithmetic expression.",
                permission=ToolPermission.COMPUTE,
                parameters={"expression": "e.g. (2 + 3) * 4"},
            ),
            _calculator,
        ),
        Tool(
            ToolSpec(
                name="current_time",
                description="Current UTC time in ISO 8601.",
                permission=ToolPermission.COMPUTE,
            ),
            _current_time,
        ),
        *_memory_tools(memory),
        _http_tool(http_max_bytes, http_timeout, http_transport, http_resolver),
        _anchor_tool(ledger),
    ]

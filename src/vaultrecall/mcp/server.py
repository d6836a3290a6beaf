from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, TextIO

from ..indexer.manager import IndexManager
from .tools import tool_context, tool_notes, tool_search, tool_status

logger = logging.getLogger(__name__)

TOOL_MAP = {
    "vault.search": tool_search,
    "vault.notes": tool_notes,
    "vault.context": tool_context,
    "vault.status": tool_status,
}


async def handle_request(manager: IndexManager, line: str) -> dict[str, Any]:
    """Answer one JSON-RPC request line."""
    rid = None
    try:
        req = json.loads(line)
        if not isinstance(req, dict):
            raise ValueError("request must be a JSON object")
        rid = req.get("id")
        method = req.get("method")
        params = req.get("params") or {}
        if method not in TOOL_MAP:
            return {"jsonrpc": "2.0", "id": rid, "error": {"code": -32601, "message": "Method not found"}}
        result = await TOOL_MAP[method](manager, params)
        return {"jsonrpc": "2.0", "id": rid, "result": result}
    except Exception as e:
        logger.warning(f"Request failed: {e}")
        return {"jsonrpc": "2.0", "id": rid, "error": {"code": -32000, "message": str(e)}}


async def run_stdio_server(manager: IndexManager, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
    """Minimal JSON-RPC-ish server over stdio, one request per line.

    Reads happen off the loop so background indexing keeps running between
    requests. Returns at end of input.
    """
    while True:
        line = await asyncio.to_thread(stdin.readline)
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        resp = await handle_request(manager, line)
        stdout.write(json.dumps(resp) + "\n")
        stdout.flush()

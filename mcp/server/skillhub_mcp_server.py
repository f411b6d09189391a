#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

# Support running directly from this repository without installing the package.
_REPO_SRC = Path(__file__).resolve().parents[2] / "src"
if _REPO_SRC.exists() and str(_REPO_SRC) not in sys.path:
    sys.path.insert(0, str(_REPO_SRC))

from skillhub import SkillManager, Tool, ToolContext, __version__, create_skill_tools
from skillhub.config import apply_env, load_config

MCP_PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "skillhub-mcp"


def _json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


class StdioMCPServer:
    def __init__(self, tools: list[Tool], loop: asyncio.AbstractEventLoop) -> None:
        self._tools = {t.name: t for t in tools}
        self._loop = loop

    def _result_payload(self, value: Any, *, is_error: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": [{"type": "text", "text": str(value)}]}
        if is_error:
            payload["isError"] = True
        return payload

    def _call_tool(self, name: str, arguments: Any) -> dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            return self._result_payload(f"Unknown tool: {name}", is_error=True)
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return self._result_payload("Tool arguments must be an object.", is_error=True)
        try:
            text = self._loop.run_until_complete(tool.execute(arguments, ToolContext(caller=SERVER_NAME)))
        except Exception as exc:  # noqa: BLE001
            return self._result_payload(f"Unexpected error: {exc}", is_error=True)
        return self._result_payload(text)

    def _make_response(self, request_id: Any, result: Any) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _make_error(self, request_id: Any, code: int, message: str) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}

    def _handle(self, message: dict[str, Any]) -> dict[str, Any] | None:
        request_id = message.get("id")
        method = message.get("method")
        params = message.get("params")

        if not isinstance(method, str):
            if request_id is None:
                return None
            return self._make_error(request_id, -32600, "Invalid request: missing method.")

        if method in {"notifications/initialized", "initialized"}:
            return None

        if method == "ping":
            if request_id is None:
                return None
            return self._make_response(request_id, {})

        if method == "initialize":
            if request_id is None:
                return None
            return self._make_response(
                request_id,
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {"tools": {"listChanged": False}},
                    "serverInfo": {"name": SERVER_NAME, "version": __version__},
                },
            )

        if method == "tools/list":
            if request_id is None:
                return None
            return self._make_response(request_id, {"tools": [t.descriptor() for t in self._tools.values()]})

        if method == "tools/call":
            if request_id is None:
                return None
            if not isinstance(params, dict):
                return self._make_error(request_id, -32602, "Invalid params for tools/call.")
            name = params.get("name")
            if not isinstance(name, str):
                return self._make_error(request_id, -32602, "tools/call requires a string `name`.")
            return self._make_response(request_id, self._call_tool(name, params.get("arguments")))

        if request_id is None:
            return None
        return self._make_error(request_id, -32601, f"Method not found: {method}")

    @staticmethod
    def _read_message() -> dict[str, Any] | None:
        headers: dict[str, str] = {}
        while True:
            line = sys.stdin.buffer.readline()
            if not line:
                return None
            stripped = line.strip()
            if not stripped:
                break
            if b":" not in line:
                continue
            key, value = line.decode("utf-8", errors="replace").split(":", 1)
            headers[key.strip().lower()] = value.strip()

        length_raw = headers.get("content-length")
        if not length_raw:
            return None
        try:
            length = int(length_raw)
        except ValueError:
            return None
        if length <= 0:
            return None

        body = sys.stdin.buffer.read(length)
        if not body:
            return None
        try:
            parsed = json.loads(body.decode("utf-8"))
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    @staticmethod
    def _write_message(payload: dict[str, Any]) -> None:
        body = _json_dumps(payload).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
        sys.stdout.buffer.write(header)
        sys.stdout.buffer.write(body)
        sys.stdout.buffer.flush()

    def run(self) -> None:
        while True:
            message = self._read_message()
            if message is None:
                break
            response = self._handle(message)
            if response is not None:
                self._write_message(response)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Skillhub MCP server (stdio).")
    parser.add_argument("--token", default=None, help="GitHub token override. Defaults to skillhub config/env.")
    parser.add_argument("--data-dir", default=None, help="Data directory override.")
    parser.add_argument("--timeout-s", type=float, default=None, help="Per-call timeout override in seconds.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr.")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    cfg = apply_env(load_config())
    cfg = replace(
        cfg,
        github_token=args.token or cfg.github_token,
        data_dir=args.data_dir or cfg.data_dir,
        timeout_s=args.timeout_s or cfg.timeout_s,
    )

    loop = asyncio.new_event_loop()
    manager = SkillManager.from_config(cfg)
    server = StdioMCPServer(create_skill_tools(manager), loop)
    try:
        server.run()
        return 0
    finally:
        loop.run_until_complete(manager.aclose())
        loop.close()


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from collections.abc import Awaitable, Callable
from dataclasses import asdict, replace
from typing import Any, TypeVar

from ._version import __version__
from .client import SkillhubError, SkillhubHTTPError
from .config import Config, apply_env, config_path, load_config, redact_token, save_config
from .manager import SkillInstalled, SkillManager
from .tools import NO_SKILLS_MESSAGE, format_search_results

T = TypeVar("T")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillhub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install skills from GitHub repositories and find them again by semantic search.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLHUB_CONFIG_PATH, SKILLHUB_GITHUB_TOKEN (or GITHUB_TOKEN), SKILLHUB_DATA_DIR,
              SKILLHUB_EMBEDDING_URL, SKILLHUB_EMBEDDING_MODEL, SKILLHUB_EMBEDDING_API_KEY (or OPENAI_API_KEY),
              SKILLHUB_TIMEOUT_S
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, default: Any = argparse.SUPPRESS) -> None:
        # Accepted both before and after the subcommand, e.g.:
        #   skillhub --token ghp_... add owner/repo
        #   skillhub add owner/repo --token ghp_...
        # Subcommands suppress defaults so they do not clobber top-level values.
        parser.add_argument("--token", default=default, help="GitHub token (overrides config/env)")
        parser.add_argument("--timeout-s", type=float, default=default, help="Per-call timeout in seconds")
        parser.add_argument("--data-dir", default=default, help="Directory for installed skills and the vector index")
        parser.add_argument("-v", "--verbose", action="store_true", default=default, help="Log progress to stderr")

    _add_runtime_overrides(p, default=None)
    p.add_argument("--version", action="version", version=f"skillhub {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (secrets redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--github-token")
    cfg_set.add_argument("--api-base-url")
    cfg_set.add_argument("--default-branch")
    cfg_set.add_argument("--fallback-branch")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-concurrency", type=int)
    cfg_set.add_argument("--data-dir")
    cfg_set.add_argument("--embedding-url", help="OpenAI-compatible embeddings base URL")
    cfg_set.add_argument("--embedding-model")
    cfg_set.add_argument("--embedding-api-key")

    add = sub.add_parser("add", aliases=["install"], help="Install a skill from a GitHub URL or owner/repo[/path]")
    add.add_argument("url")
    add.add_argument("--json", action="store_true")
    _add_runtime_overrides(add)

    rm = sub.add_parser("remove", aliases=["uninstall", "rm"], help="Uninstall a skill")
    rm.add_argument("name")
    rm.add_argument("--json", action="store_true")
    _add_runtime_overrides(rm)

    search = sub.add_parser("search", help="Semantic search over installed skills")
    search.add_argument("query", nargs="?", default=None)
    search.add_argument("--json", action="store_true")
    _add_runtime_overrides(search)

    load = sub.add_parser("load", help="Print a skill's SKILL.md")
    load.add_argument("name")
    _add_runtime_overrides(load)

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    ls.add_argument("--json", action="store_true")
    _add_runtime_overrides(ls)

    return p


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    token = getattr(args, "token", None) or cfg.github_token
    timeout_s = getattr(args, "timeout_s", None) or cfg.timeout_s
    data_dir = getattr(args, "data_dir", None) or cfg.data_dir
    return replace(cfg, github_token=token, timeout_s=float(timeout_s), data_dir=data_dir)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _run_with_manager(args: argparse.Namespace, fn: Callable[[SkillManager], Awaitable[T]]) -> T:
    cfg = _merge_cfg(load_config(), args)

    async def _main() -> T:
        manager = SkillManager.from_config(cfg)
        try:
            return await fn(manager)
        finally:
            await manager.aclose()

    return asyncio.run(_main())


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["github_token"] = redact_token(cfg.github_token)
        d["embedding_api_key"] = redact_token(cfg.embedding_api_key)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates: dict[str, Any] = {}
        for field_name in (
            "github_token",
            "api_base_url",
            "default_branch",
            "fallback_branch",
            "timeout_s",
            "max_concurrency",
            "data_dir",
            "embedding_url",
            "embedding_model",
            "embedding_api_key",
        ):
            value = getattr(args, field_name, None)
            if value is not None:
                updates[field_name] = value
        path = save_config(replace(cfg, **updates))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_add(args: argparse.Namespace) -> int:
    outcome = _run_with_manager(args, lambda m: m.add_skill(args.url))

    if isinstance(outcome, SkillInstalled):
        if args.json:
            print(json.dumps({"status": "installed", **asdict(outcome)}, indent=2, sort_keys=True))
            return 0
        print(f"installed: {outcome.name}")
        print(f"source: {outcome.source_url}")
        for key in outcome.files:
            print(f"file: {key}")
        return 0

    if args.json:
        print(json.dumps({"status": "multiple_found", "skills": list(outcome.candidates), "url": outcome.url}, indent=2))
        return 2
    print(f"Multiple skills found in {outcome.url}. Re-run with the folder of one of:", file=sys.stderr)
    for candidate in outcome.candidates:
        print(f"  {candidate}", file=sys.stderr)
    return 2


def cmd_remove(args: argparse.Namespace) -> int:
    deleted = _run_with_manager(args, lambda m: m.delete_skill(args.name))
    if args.json:
        print(json.dumps({"removed": args.name, "artifacts_deleted": deleted}, indent=2, sort_keys=True))
        return 0
    print(f"removed: {args.name} ({deleted} file(s))")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    matches = _run_with_manager(args, lambda m: m.search_skills(args.query))
    if args.json:
        payload = [{"id": m.id, "score": m.score, "metadata": m.metadata} for m in matches]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    print(format_search_results(matches))
    return 0


def cmd_load(args: argparse.Namespace) -> int:
    text = _run_with_manager(args, lambda m: m.load_skill(args.name))
    if text is None:
        print(f"error: Skill '{args.name}' not found.", file=sys.stderr)
        return 1
    sys.stdout.write(text)
    if not text.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    skills = _run_with_manager(args, lambda m: m.list_skills())
    if args.json:
        print(json.dumps([s.to_dict() for s in skills], indent=2, sort_keys=True))
        return 0
    if not skills:
        print(NO_SKILLS_MESSAGE)
        return 0
    rows = [["NAME", "SUMMARY", "SOURCE", "INSTALLED"]]
    rows.extend([s.name, s.summary, s.source_url, s.installed_at] for s in skills)
    _print_table(rows)
    return 0


def _http_error_detail(body: str) -> str | None:
    text = body.strip()
    if not text:
        return None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(obj, dict):
        for key in ("message", "detail", "error"):
            value = obj.get(key)
            if isinstance(value, str):
                value = value.strip()
                if value:
                    return value
    return text


def _format_http_error(err: SkillhubHTTPError) -> str:
    detail = _http_error_detail(err.body)
    if err.status_code == 401:
        base = "HTTP 401 Unauthorized. Missing or invalid GitHub token."
    elif err.status_code == 403:
        base = "HTTP 403 Forbidden. Rate limited or not allowed; set a GitHub token."
    elif err.status_code == 404:
        base = "HTTP 404 Not Found. Repository or branch does not exist or is not visible to your token."
    else:
        base = f"HTTP {err.status_code}"
    if detail:
        return f"{base} {detail}"
    return base


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("add", "install"):
            return cmd_add(args)
        if args.cmd in ("remove", "uninstall", "rm"):
            return cmd_remove(args)
        if args.cmd == "search":
            return cmd_search(args)
        if args.cmd == "load":
            return cmd_load(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        raise AssertionError("unreachable")
    except SkillhubHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except SkillhubError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

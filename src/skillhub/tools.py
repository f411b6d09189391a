from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .client import DescriptorMissingError, InvalidReferenceError, NoSkillFoundError
from .manager import SkillInstalled, SkillManager

logger = logging.getLogger(__name__)

NO_SKILLS_MESSAGE = "No installed skills found."


@dataclass(frozen=True)
class ToolContext:
    """Who is calling and from where; integrations may attach their own fields."""

    caller: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[str]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler

    async def execute(self, arguments: dict[str, Any] | None = None, context: ToolContext | None = None) -> str:
        return await self.handler(dict(arguments or {}), context or ToolContext())

    def descriptor(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def _string_arg(arguments: dict[str, Any], *names: str) -> str:
    for name in names:
        value = arguments.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def format_search_results(matches: list[Any]) -> str:
    if not matches:
        return NO_SKILLS_MESSAGE
    blocks = []
    for m in matches:
        description = (m.metadata or {}).get("description") or "No description"
        blocks.append(f"Skill: {m.id}\nDescription: {description}")
    return "\n\n".join(blocks)


def create_skill_tools(manager: SkillManager) -> list[Tool]:
    """Build the agent-facing tool set. Every handler returns text and never raises."""

    async def add_skill(arguments: dict[str, Any], context: ToolContext) -> str:
        url = _string_arg(arguments, "url")
        if not url:
            return "Error: URL argument is required."
        try:
            outcome = await manager.add_skill(url)
        except InvalidReferenceError as e:
            return str(e)
        except NoSkillFoundError as e:
            return str(e)
        except DescriptorMissingError as e:
            return f"Error: {e}"
        except Exception as e:  # noqa: BLE001 - tool boundary: report, never raise
            logger.debug("addSkill failed", exc_info=True)
            return f"Failed to install skill: {e}"
        if isinstance(outcome, SkillInstalled):
            return f"Successfully installed skill: {outcome.name}"
        return json.dumps({"status": "multiple_found", "skills": list(outcome.candidates), "url": outcome.url})

    async def delete_skill(arguments: dict[str, Any], context: ToolContext) -> str:
        name = _string_arg(arguments, "name", "skillName")
        if not name:
            return "Error: Skill name is required."
        try:
            await manager.delete_skill(name)
        except Exception as e:  # noqa: BLE001
            logger.debug("deleteSkill failed", exc_info=True)
            return f"Failed to delete skill: {e}"
        return f"Successfully deleted skill '{name}'."

    async def search_skills(arguments: dict[str, Any], context: ToolContext) -> str:
        try:
            matches = await manager.search_skills(_string_arg(arguments, "query") or None)
        except Exception as e:  # noqa: BLE001
            logger.debug("searchSkills failed", exc_info=True)
            return f"Failed to search skills: {e}"
        return format_search_results(matches)

    async def load_skill(arguments: dict[str, Any], context: ToolContext) -> str:
        name = _string_arg(arguments, "name", "skillName")
        if not name:
            return "Error: Skill name is required."
        try:
            text = await manager.load_skill(name)
        except Exception as e:  # noqa: BLE001
            logger.debug("loadSkill failed", exc_info=True)
            return f"Failed to load skill: {e}"
        if text is None:
            return f"Error: Skill '{name}' not found."
        return text

    async def list_skills(arguments: dict[str, Any], context: ToolContext) -> str:
        try:
            skills = await manager.list_skills()
        except Exception as e:  # noqa: BLE001
            return f"Failed to list skills: {e}"
        if not skills:
            return NO_SKILLS_MESSAGE
        return "\n".join(f"- {s.name}: {s.summary} ({s.source_url})" for s in skills)

    name_schema = {
        "type": "object",
        "properties": {"name": {"type": "string", "description": "The name of the installed skill."}},
        "required": ["name"],
    }
    return [
        Tool(
            name="addSkill",
            description="Adds a capability/skill from GitHub repositories by discovering SKILL.md files.",
            input_schema={
                "type": "object",
                "properties": {
                    "url": {
                        "type": "string",
                        "description": "The GitHub URL (https://github.com/owner/repo) OR shorthand (owner/repo).",
                    }
                },
                "required": ["url"],
            },
            handler=add_skill,
        ),
        Tool(
            name="deleteSkill",
            description="Uninstalls a skill, removing its files and indexing metadata.",
            input_schema=name_schema,
            handler=delete_skill,
        ),
        Tool(
            name="searchSkills",
            description="Search for locally installed skills and their documentation using vector search.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query. If omitted, lists available skills.",
                    }
                },
            },
            handler=search_skills,
        ),
        Tool(
            name="loadSkill",
            description="Loads the full documentation and instructions for a specific installed skill.",
            input_schema=name_schema,
            handler=load_skill,
        ),
        Tool(
            name="listSkills",
            description="Lists installed skills from the manifest with their one-line summaries.",
            input_schema={"type": "object", "properties": {}},
            handler=list_skills,
        ),
    ]

from ._version import __version__
from .client import GitHubClient, SkillhubError, SkillhubHTTPError
from .manager import SkillInstalled, SkillManager, SkillsToChoose
from .refs import RepositoryCoordinate, parse_repo_ref
from .tools import Tool, ToolContext, create_skill_tools

__all__ = [
    "GitHubClient",
    "RepositoryCoordinate",
    "SkillInstalled",
    "SkillManager",
    "SkillhubError",
    "SkillhubHTTPError",
    "SkillsToChoose",
    "Tool",
    "ToolContext",
    "__version__",
    "create_skill_tools",
    "parse_repo_ref",
]

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .client import NoSkillFoundError, TreeEntry
from .config import DESCRIPTOR_FILENAME

ROOT_FOLDER_LABEL = "."


@dataclass(frozen=True)
class ResolvedSkill:
    folder_path: str  # "" when the descriptor sits at the repository root
    name: str

    @property
    def descriptor_path(self) -> str:
        if not self.folder_path:
            return DESCRIPTOR_FILENAME
        return f"{self.folder_path}/{DESCRIPTOR_FILENAME}"


@dataclass(frozen=True)
class MultipleSkillsFound:
    candidates: tuple[str, ...]


def is_descriptor(entry: TreeEntry) -> bool:
    return entry.is_file and entry.path.rsplit("/", 1)[-1] == DESCRIPTOR_FILENAME


def marker_folder(path: str) -> str:
    if "/" not in path:
        return ""
    return path.rsplit("/", 1)[0]


def skill_name_for(folder: str, repo: str) -> str:
    return folder.rsplit("/", 1)[-1] if folder else repo


def _label(folder: str) -> str:
    return folder or ROOT_FOLDER_LABEL


def resolve_skill(
    entries: Sequence[TreeEntry],
    *,
    subpath: str,
    repo: str,
) -> ResolvedSkill | MultipleSkillsFound:
    """
    Pick exactly one skill folder out of a repository tree.

    An exact folder match on ``subpath`` always wins. Otherwise a non-empty
    ``subpath`` narrows the markers to its descendants, and a single remaining
    marker (or a single marker overall) is selected. Anything else is reported
    as MultipleSkillsFound; the resolver never picks among candidates.
    """
    requested = subpath.strip("/")
    folders = [marker_folder(e.path) for e in entries if is_descriptor(e)]
    if not folders:
        raise NoSkillFoundError("No valid skills found. Skills require a SKILL.md file.")

    if requested in folders:
        return ResolvedSkill(folder_path=requested, name=skill_name_for(requested, repo))

    if requested:
        nested = [f for f in folders if f.startswith(requested + "/")]
        if len(nested) == 1:
            return ResolvedSkill(folder_path=nested[0], name=skill_name_for(nested[0], repo))
        if len(nested) > 1:
            return MultipleSkillsFound(candidates=tuple(_label(f) for f in nested))

    if len(folders) == 1:
        return ResolvedSkill(folder_path=folders[0], name=skill_name_for(folders[0], repo))
    return MultipleSkillsFound(candidates=tuple(_label(f) for f in folders))


def files_under(entries: Sequence[TreeEntry], folder: str) -> list[TreeEntry]:
    """Every file entry belonging to ``folder``; the root folder owns the whole tree."""
    if not folder:
        return [e for e in entries if e.is_file]
    prefix = folder + "/"
    return [e for e in entries if e.is_file and (e.path == folder or e.path.startswith(prefix))]


def relative_to_folder(path: str, folder: str) -> str:
    if not folder:
        return path
    if path == folder:
        return path.rsplit("/", 1)[-1]
    return path[len(folder) + 1 :]

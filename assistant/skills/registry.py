from __future__ import annotations

import re
import threading
from typing import Iterable, Iterator

from .exceptions import SkillNotFoundError
from .models import SkillDefinition, SkillHandler

__all__ = ["normalize_skill_name", "SkillRegistry", "skill_registry"]


_SEPARATORS = re.compile(r"[\\/\s]+")
_DOT_RUNS = re.compile(r"\.+")


def normalize_skill_name(name: str) -> str:
    """Return the canonical dotted identifier used for registry lookups."""
    if not isinstance(name, str):
        raise TypeError("Skill name must be a string")
    collapsed = _SEPARATORS.sub(".", name.strip())
    collapsed = _DOT_RUNS.sub(".", collapsed)
    return collapsed.strip(".").lower()


class SkillRegistry:
    """Registry of skill definitions keyed by normalized ``domain.action`` names."""

    def __init__(self, definitions: Iterable[SkillDefinition] | None = None) -> None:
        self._lock = threading.Lock()
        self._skills: dict[str, SkillDefinition] = {}
        for definition in definitions or ():
            self.register(definition)

    def register(self, definition: SkillDefinition) -> None:
        key = normalize_skill_name(definition.name)
        with self._lock:
            self._skills[key] = definition.model_copy(update={"name": key})

    def register_handler(
        self,
        name: str,
        handler: SkillHandler | None,
        *,
        description: str = "",
        tags: Iterable[str] | None = None,
    ) -> None:
        self.register(SkillDefinition(name=name, handler=handler, description=description, tags=list(tags or [])))

    def unregister(self, name: str) -> None:
        with self._lock:
            self._skills.pop(normalize_skill_name(name), None)

    def clear(self) -> None:
        with self._lock:
            self._skills.clear()

    def get(self, name: str) -> SkillDefinition | None:
        with self._lock:
            return self._skills.get(normalize_skill_name(name))

    def require(self, name: str) -> SkillDefinition:
        definition = self.get(name)
        if definition is None:
            raise SkillNotFoundError(name)
        return definition

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def list(self) -> list[str]:
        with self._lock:
            return sorted(self._skills)

    def unknown(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if name not in self]

    def domains(self) -> list[str]:
        with self._lock:
            return sorted({definition.domain for definition in self._skills.values()})

    def in_domain(self, domain: str) -> list[SkillDefinition]:
        domain = normalize_skill_name(domain)
        with self._lock:
            return [d for key, d in sorted(self._skills.items()) if d.domain == domain]

    def search(self, query: str) -> list[SkillDefinition]:
        needle = query.strip().lower()
        if not needle:
            return []
        with self._lock:
            matches = [
                definition
                for key, definition in sorted(self._skills.items())
                if needle in key
                or needle in definition.description.lower()
                or any(needle in tag.lower() for tag in definition.tags)
            ]
        return matches

    def describe(self, skill_or_domain: str | None = None, *, search: str | None = None) -> str:
        """Help text for one skill, one domain, a search, or the domain overview."""
        if search:
            matches = self.search(search)
            if not matches:
                return f'No skills match "{search}".'
            return "\n".join(_summary_line(definition) for definition in matches)

        if not skill_or_domain:
            domains = self.domains()
            if not domains:
                return "No skills are registered."
            lines = ["Available skill domains:"]
            for domain in domains:
                lines.append(f"- {domain} ({len(self.in_domain(domain))} skills)")
            lines.append("Call get_skill with a domain name to list its skills.")
            return "\n".join(lines)

        definition = self.get(skill_or_domain)
        if definition is not None:
            lines = [f"Skill: {definition.name}", definition.description or "(no description)"]
            if definition.tags:
                lines.append(f"Tags: {', '.join(definition.tags)}")
            return "\n".join(lines)

        in_domain = self.in_domain(skill_or_domain)
        if in_domain:
            header = f"Skills in {normalize_skill_name(skill_or_domain)}:"
            return "\n".join([header, *(_summary_line(d) for d in in_domain)])
        return f'Unknown skill or domain "{skill_or_domain}". Available domains: {", ".join(self.domains())}'

    def items(self) -> Iterator[tuple[str, SkillDefinition]]:
        with self._lock:
            snapshot = list(self._skills.items())
        yield from snapshot


skill_registry = SkillRegistry()


def _summary_line(definition: SkillDefinition) -> str:
    if definition.description:
        return f"- {definition.name}: {definition.description}"
    return f"- {definition.name}"

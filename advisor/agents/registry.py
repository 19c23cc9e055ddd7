"""Agent registry loaded from YAML agent definitions."""

from __future__ import annotations
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from advisor.errors import AgentNotFound, RegistryLoadError
from advisor.models import AgentDefinition
from advisor.utils.logger import logger

DEFAULT_DEFINITIONS_PATH = Path(__file__).parent / "definitions"


class AgentDocument(BaseModel):
    """One YAML document of agent definitions."""

    version: int = 1
    agents: List[AgentDefinition]


class AgentRegistry:
    """Read-only catalog of agent definitions.

    Declaration order is preserved; the planner relies on it for tie-breaks.
    Construction fails with RegistryLoadError on duplicate ids, an empty
    catalog or when no generalist agent can be resolved.
    """

    def __init__(self, definitions: Iterable[AgentDefinition], generalist_id: Optional[str] = None):
        self._agents: Dict[str, AgentDefinition] = {}
        for definition in definitions:
            if definition.id in self._agents:
                raise RegistryLoadError(f"Duplicate agent id: {definition.id}")
            self._agents[definition.id] = definition
        if not self._agents:
            raise RegistryLoadError("No agent definitions loaded")
        self._generalist = self._resolve_generalist(generalist_id)

    def _resolve_generalist(self, generalist_id: Optional[str]) -> AgentDefinition:
        if generalist_id:
            if generalist_id not in self._agents:
                raise RegistryLoadError(f"Configured generalist agent is not defined: {generalist_id}")
            return self._agents[generalist_id]
        for definition in self._agents.values():
            if definition.generalist:
                return definition
        raise RegistryLoadError(
            "No generalist agent: mark one definition with `generalist: true`"
        )

    @classmethod
    def load(cls, path: Optional[str | Path] = None, generalist_id: Optional[str] = None) -> "AgentRegistry":
        """Load definitions from a YAML file or from every `*.yaml` in a directory (sorted by name)."""
        source = Path(path) if path else DEFAULT_DEFINITIONS_PATH
        if source.is_dir():
            files = sorted(list(source.glob("*.yaml")) + list(source.glob("*.yml")))
        elif source.exists():
            files = [source]
        else:
            raise RegistryLoadError(f"Agent definitions not found: {source}")

        definitions: List[AgentDefinition] = []
        for file in files:
            try:
                data = yaml.safe_load(file.read_text(encoding="utf-8"))
                document = AgentDocument.model_validate(data)
            except yaml.YAMLError as e:
                raise RegistryLoadError(f"Malformed YAML in {file.name}: {e}") from e
            except ValidationError as e:
                raise RegistryLoadError(f"Invalid agent definition in {file.name}: {e}") from e
            definitions.extend(document.agents)

        registry = cls(definitions, generalist_id=generalist_id)
        logger.info("agent_registry_loaded", agents=len(registry), source=str(source))
        return registry

    def get(self, agent_id: str) -> AgentDefinition:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise AgentNotFound(agent_id) from None

    def all(self) -> List[AgentDefinition]:
        return list(self._agents.values())

    def ids(self) -> List[str]:
        return list(self._agents)

    def generalist(self) -> AgentDefinition:
        return self._generalist

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

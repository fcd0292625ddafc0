"""
Phase registry: the static, ordered catalog of phase definitions.

Loaded once from YAML and never mutated afterwards. Phase definitions are
versioned by shipping a new registry file, so historical gate results stay
interpretable against the rules that produced them.
"""
import importlib.resources
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from .error_handling import ConfigurationError
from .models import Criterion, PhaseDefinition
from .schema import RegistryDef

logger = logging.getLogger(__name__)

# Returned by next_ordinal() after the last phase
TERMINAL = None

BUNDLED_PACKAGE = "phasegate.registries"


class PhaseRegistry:
    """Read-only lookup of phase definitions by ordinal"""

    def __init__(self, name: str, phases: List[PhaseDefinition], version: str = "1.0", description: str = ""):
        ordinals = [p.ordinal for p in phases]
        expected = list(range(1, len(phases) + 1))
        if sorted(ordinals) != expected:
            raise ConfigurationError(
                f"Registry '{name}' phase ordinals must be contiguous from 1, got {ordinals}"
            )
        self.name = name
        self.version = version
        self.description = description
        self._phases = {p.ordinal: p for p in phases}

    def __len__(self) -> int:
        return len(self._phases)

    def __iter__(self):
        return iter(self.phases)

    @property
    def phases(self) -> List[PhaseDefinition]:
        return [self._phases[o] for o in sorted(self._phases)]

    @property
    def last_ordinal(self) -> int:
        return len(self._phases)

    @property
    def terminal_ordinal(self) -> int:
        """Ordinal recorded on work items that passed every phase"""
        return self.last_ordinal + 1

    def definition_for(self, ordinal: int) -> PhaseDefinition:
        try:
            return self._phases[ordinal]
        except KeyError:
            raise KeyError(f"Registry '{self.name}' has no phase {ordinal}")

    def next_ordinal(self, current: int) -> Optional[int]:
        """Ordinal after `current`, or TERMINAL when `current` is the last phase"""
        self.definition_for(current)
        if current >= self.last_ordinal:
            return TERMINAL
        return current + 1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "phases": [p.to_dict() for p in self.phases],
        }


def parse_registry(data: Dict[str, Any]) -> PhaseRegistry:
    """
    Build a PhaseRegistry from already-loaded YAML data

    Raises:
        ConfigurationError: If the structure or any rule is violated
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Registry YAML must be a dictionary at top level")

    # Handle both flat and nested structures
    registry_data = data.get("registry", data)

    try:
        definition = RegistryDef(**registry_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid registry: {e}")

    phases = [
        PhaseDefinition(
            ordinal=p.ordinal,
            name=p.name,
            description=p.description or "",
            criteria=tuple(Criterion(id=c.id, prompt=c.prompt, weight=c.weight) for c in p.criteria),
            pass_threshold=p.pass_threshold,
            escalate_threshold=p.escalate_threshold,
            deliverables=tuple(p.deliverables),
        )
        for p in definition.phases
    ]

    return PhaseRegistry(
        name=definition.name,
        phases=phases,
        version=definition.version,
        description=definition.description or "",
    )


def load_registry(yaml_path: Union[str, Path]) -> PhaseRegistry:
    """
    Parse a registry YAML file

    Args:
        yaml_path: Path to the registry YAML file

    Raises:
        ConfigurationError: If the file is missing, not YAML, or invalid
    """
    yaml_path = Path(yaml_path)
    if not yaml_path.exists():
        raise ConfigurationError(f"Registry file not found: {yaml_path}")

    try:
        data = yaml.safe_load(yaml_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {yaml_path}: {e}")

    registry = parse_registry(data)
    logger.info("Loaded registry '%s' v%s (%d phases) from %s",
                registry.name, registry.version, len(registry), yaml_path)
    return registry


def bundled_registry_names() -> List[str]:
    """Names of the registries shipped with the package"""
    files = importlib.resources.files(BUNDLED_PACKAGE)
    return sorted(
        entry.name[:-len(".yaml")]
        for entry in files.iterdir()
        if entry.name.endswith(".yaml")
    )


def load_bundled_registry(name: str) -> PhaseRegistry:
    """Load one of the registries shipped with the package by name"""
    resource = importlib.resources.files(BUNDLED_PACKAGE) / f"{name}.yaml"
    if not resource.is_file():
        raise ConfigurationError(
            f"Unknown bundled registry '{name}'. Available: {', '.join(bundled_registry_names())}"
        )
    with importlib.resources.as_file(resource) as path:
        return load_registry(path)

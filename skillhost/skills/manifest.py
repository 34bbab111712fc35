"""Skill Descriptor and Manifest Loader.

This module provides:
- SkillDescriptor: immutable description of an installed skill
- load_manifest() for parsing ``skill.yaml`` manifests
- validate_manifest() for semantic checks that go beyond field types

Manifest format (YAML):

    skill_id: coding-agent
    name: Coding Agent
    version: 1.2.0
    description: Delegates coding tasks
    prompt_method: prompt
    entry:
      command: ["uv", "run", "agent.py"]
    runtime:
      kind: uv
      min_version: 0.4.0
    capabilities: [file_read, file_write, shell_exec, credential_read]
    credentials:
      - name: api_token
        env_var: AGENT_API_TOKEN
        description: Token for the agent backend

For a Python entry script, the script's inline metadata (``# /// script``)
fills in ``runtime.requires_python`` and ``runtime.dependencies``; for the
``python`` runtime it also supplies ``min_version`` when the manifest does not.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from skillhost.skills.pep723 import find_entry_script, minimum_python, parse_script_metadata

logger = logging.getLogger(__name__)


SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+(-[a-zA-Z0-9\.\-]+)?(\+[a-zA-Z0-9\.\-]+)?$")
SKILL_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\._\-]*$")
VERSION_CONSTRAINT_PATTERN = re.compile(r"^\d+(\.\d+){0,2}$")
CREDENTIAL_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
ENV_VAR_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")

PROMPT_METHODS = ("invoke", "prompt")


class Capability(str, Enum):
    """Named permission a skill may exercise."""

    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    SHELL_EXEC = "shell_exec"
    NETWORK_EGRESS = "network_egress"
    CREDENTIAL_READ = "credential_read"

    @property
    def is_write_class(self) -> bool:
        """Write/execute capabilities are vetoed in read-only tool mode."""
        return self in (Capability.FILE_WRITE, Capability.SHELL_EXEC)


def parse_capabilities(values) -> FrozenSet[Capability]:
    """Parse capability names into a frozenset.

    Raises:
        ValueError: If a name is not a known capability
    """
    result = set()
    for value in values or ():
        try:
            result.add(Capability(value))
        except ValueError:
            known = ", ".join(c.value for c in Capability)
            raise ValueError(f"Unknown capability '{value}' (known: {known})")
    return frozenset(result)


class EntryPoint(BaseModel):
    """Command that starts the skill process."""

    model_config = ConfigDict(frozen=True)

    command: Tuple[str, ...]
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("command", mode="before")
    @classmethod
    def validate_command(cls, v):
        if isinstance(v, str):
            v = v.split()
        if not v:
            raise ValueError("entry.command cannot be empty")
        return tuple(str(part) for part in v)


class RuntimeRequirement(BaseModel):
    """Interpreter or binary the entry point needs."""

    model_config = ConfigDict(frozen=True)

    kind: str
    min_version: Optional[str] = None
    # From the entry script's inline metadata; None when there is none
    requires_python: Optional[str] = None
    dependencies: Optional[Tuple[str, ...]] = None

    @field_validator("min_version")
    @classmethod
    def validate_min_version(cls, v):
        if v is not None and not VERSION_CONSTRAINT_PATTERN.match(v):
            raise ValueError(f"min_version '{v}' must look like 1, 1.2 or 1.2.3")
        return v


class CredentialSpec(BaseModel):
    """A secret the skill receives as an environment variable."""

    model_config = ConfigDict(frozen=True)

    name: str
    env_var: str
    required: bool = True
    default: Optional[str] = None
    description: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not CREDENTIAL_NAME_PATTERN.match(v):
            raise ValueError(f"credential name '{v}' must be lowercase letters, digits and underscores")
        return v

    @field_validator("env_var")
    @classmethod
    def validate_env_var(cls, v: str) -> str:
        if not ENV_VAR_PATTERN.match(v):
            raise ValueError(f"credential env_var '{v}' must be an uppercase environment variable name")
        return v


class SkillDescriptor(BaseModel):
    """Immutable description of a registered skill.

    A change to any field (capabilities in particular) means installing a
    new descriptor; capability changes require re-approval.
    """

    model_config = ConfigDict(frozen=True)

    skill_id: str
    name: str
    version: str = "0.1.0"
    description: str = ""
    entry: EntryPoint
    capabilities: FrozenSet[Capability] = Field(default_factory=frozenset)
    runtime: Optional[RuntimeRequirement] = None
    prompt_method: str = "invoke"
    credentials: Tuple[CredentialSpec, ...] = ()

    @field_validator("skill_id")
    @classmethod
    def validate_skill_id(cls, v: str) -> str:
        if not SKILL_ID_PATTERN.match(v or ""):
            raise ValueError(
                "skill_id must contain only lowercase letters, numbers, dots, underscores, hyphens"
            )
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name is required")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not SEMVER_PATTERN.match(v):
            raise ValueError(f"version '{v}' is not valid semver (e.g., 1.0.0)")
        return v

    @field_validator("capabilities", mode="before")
    @classmethod
    def validate_capabilities(cls, v):
        return parse_capabilities(v)

    @field_validator("prompt_method")
    @classmethod
    def validate_prompt_method(cls, v: str) -> str:
        if v not in PROMPT_METHODS:
            raise ValueError(f"prompt_method must be one of {PROMPT_METHODS}")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Normalize to a JSON-serializable dictionary for storage."""
        data = self.model_dump(mode="json")
        data["capabilities"] = sorted(c.value for c in self.capabilities)
        data["entry"]["command"] = list(self.entry.command)
        return data


def load_manifest(path_or_bytes: Union[str, Path, bytes]) -> SkillDescriptor:
    """Load and parse a skill manifest from file or bytes.

    A relative ``entry.cwd`` is resolved against the manifest's directory;
    when absent, the manifest's directory is used.

    Args:
        path_or_bytes: File path (str/Path) or raw YAML bytes

    Returns:
        SkillDescriptor instance

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the manifest structure is invalid
    """
    base_dir = None
    if isinstance(path_or_bytes, bytes):
        data = yaml.safe_load(path_or_bytes)
    else:
        path = Path(path_or_bytes)
        if path.is_dir():
            path = path / "skill.yaml"
        if not path.exists():
            raise FileNotFoundError(f"Manifest file not found: {path}")
        base_dir = path.resolve().parent
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError("Manifest must be a YAML dictionary")

    entry = data.get("entry")
    if isinstance(entry, dict) and base_dir is not None:
        cwd = entry.get("cwd")
        entry = dict(entry)
        entry["cwd"] = str(base_dir / cwd) if cwd else str(base_dir)
        data = dict(data, entry=entry)

    runtime = data.get("runtime")
    if isinstance(runtime, dict) and isinstance(entry, dict) and base_dir is not None:
        data = dict(data, runtime=_with_script_metadata(runtime, entry))

    try:
        return SkillDescriptor(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid skill manifest: {e}") from e


def _with_script_metadata(runtime: Dict[str, Any], entry: Dict[str, Any]) -> Dict[str, Any]:
    """Fill runtime fields from the entry script's inline metadata."""
    command = entry.get("command")
    if isinstance(command, str):
        command = command.split()
    if not command:
        return runtime
    script = find_entry_script([str(c) for c in command], entry.get("cwd"))
    if script is None or not script.is_file():
        return runtime
    try:
        metadata = parse_script_metadata(script)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Cannot read inline metadata of {script}: {e}")
        return runtime
    if not metadata.found:
        return runtime

    runtime = dict(runtime)
    runtime.setdefault("requires_python", metadata.requires_python)
    runtime.setdefault("dependencies", list(metadata.dependencies))
    if runtime.get("kind") == "python" and not runtime.get("min_version"):
        runtime["min_version"] = minimum_python(metadata.requires_python)
    return runtime


def validate_manifest(descriptor: SkillDescriptor) -> Tuple[bool, List[str]]:
    """Semantic checks on a parsed descriptor.

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = []

    # Rule 1: a runtime requirement names the binary the command starts with
    if descriptor.runtime and descriptor.entry.command[0] != descriptor.runtime.kind:
        errors.append(
            f"entry.command must start with the runtime kind '{descriptor.runtime.kind}' "
            f"(got '{descriptor.entry.command[0]}')"
        )

    # Rule 2: the entry point must not override the minimal environment's PATH
    if "PATH" in descriptor.entry.env:
        errors.append("entry.env cannot override PATH")

    # Rule 3: credentials are only handed over under credential_read
    if descriptor.credentials and Capability.CREDENTIAL_READ not in descriptor.capabilities:
        errors.append("credentials require the credential_read capability")

    # Rule 4: each credential has its own variable, not one the entry point sets
    seen_names = set()
    seen_vars = set()
    for credential in descriptor.credentials:
        if credential.name in seen_names:
            errors.append(f"credential '{credential.name}' is declared twice")
        if credential.env_var in seen_vars:
            errors.append(f"credential env_var '{credential.env_var}' is used twice")
        if credential.env_var == "PATH" or credential.env_var in descriptor.entry.env:
            errors.append(f"credential env_var '{credential.env_var}' collides with entry.env")
        seen_names.add(credential.name)
        seen_vars.add(credential.env_var)

    return (len(errors) == 0, errors)


__all__ = [
    "Capability",
    "CredentialSpec",
    "EntryPoint",
    "RuntimeRequirement",
    "SkillDescriptor",
    "load_manifest",
    "parse_capabilities",
    "validate_manifest",
]

"""Skill descriptors and the installed-skill registry.

- Manifest parsing and validation (skill.yaml)
- Registry (SQLite, shared database with the approval store)
"""

from skillhost.skills.manifest import (
    Capability,
    SkillDescriptor,
    load_manifest,
    validate_manifest,
)
from skillhost.skills.registry import SkillRecord, SkillRegistry, SkillStatus

__all__ = [
    "Capability",
    "SkillDescriptor",
    "load_manifest",
    "validate_manifest",
    "SkillRecord",
    "SkillRegistry",
    "SkillStatus",
]

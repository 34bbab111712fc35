"""
Credential Mediation - secrets handed to skills as environment variables

Skills declare the credentials they need in their manifest. When a session
is granted ``credential_read``, the host looks the values up through a
CredentialProvider and passes them to the skill process environment under
the declared variable names. Values are never logged or stored in the
registry; how a provider keeps them is up to the provider.

Resolution for each declared credential:
1. The provider's value
2. The declared default
3. Missing: an error when required, skipped otherwise
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from skillhost.core.errors import CredentialMissingError
from skillhost.skills.manifest import SkillDescriptor

logger = logging.getLogger(__name__)

ENV_PREFIX = "SKILLHOST_CREDENTIAL_"


class CredentialProvider(Protocol):
    """Source of credential values (environment, keychain, test double)."""

    def get(self, skill_id: str, name: str) -> Optional[str]:
        ...


def credential_env_name(skill_id: str, name: str) -> str:
    """``coding-agent`` / ``api_token`` -> ``SKILLHOST_CREDENTIAL_CODING_AGENT_API_TOKEN``"""
    return ENV_PREFIX + re.sub(r"[^A-Z0-9]", "_", f"{skill_id}_{name}".upper())


class EnvironmentCredentialProvider:
    """Reads credentials from the host's own environment."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def get(self, skill_id: str, name: str) -> Optional[str]:
        return self.environ.get(credential_env_name(skill_id, name))


class StaticCredentialProvider:
    """Credentials from a fixed mapping keyed by (skill_id, name)."""

    def __init__(self, values: Optional[Dict[Tuple[str, str], str]] = None):
        self.values = dict(values or {})

    def set(self, skill_id: str, name: str, value: str):
        self.values[(skill_id, name)] = value

    def get(self, skill_id: str, name: str) -> Optional[str]:
        return self.values.get((skill_id, name))


@dataclass(frozen=True)
class CredentialStatus:
    """Whether one declared credential currently has a value"""

    name: str
    env_var: str
    required: bool
    available: bool
    has_default: bool

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "env_var": self.env_var,
            "required": self.required,
            "available": self.available,
            "has_default": self.has_default,
        }


def collect_credentials(descriptor: SkillDescriptor, provider: CredentialProvider) -> Dict[str, str]:
    """
    Environment variables for every declared credential that has a value

    Raises:
        CredentialMissingError: If a required credential has no value and no default
    """
    env: Dict[str, str] = {}
    for spec in descriptor.credentials:
        value = provider.get(descriptor.skill_id, spec.name)
        if value is None:
            value = spec.default
        if value is None:
            if spec.required:
                raise CredentialMissingError(
                    descriptor.skill_id,
                    spec.name,
                    hint=f"Set {credential_env_name(descriptor.skill_id, spec.name)} for the host",
                )
            continue
        env[spec.env_var] = value

    if env:
        logger.info(
            f"Passing {len(env)} credential(s) to {descriptor.skill_id}",
            extra={
                "security_event": "credentials_injected",
                "skill_id": descriptor.skill_id,
                "env_vars": sorted(env),
            },
        )
    return env


def credential_status(descriptor: SkillDescriptor, provider: CredentialProvider) -> List[CredentialStatus]:
    """Availability of each declared credential, in declaration order."""
    return [
        CredentialStatus(
            name=spec.name,
            env_var=spec.env_var,
            required=spec.required,
            available=provider.get(descriptor.skill_id, spec.name) is not None,
            has_default=spec.default is not None,
        )
        for spec in descriptor.credentials
    ]

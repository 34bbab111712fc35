"""Shared fixtures for skillhost tests."""

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from skillhost.core.config import RestartPolicy, RuntimeSettings
from skillhost.core.gate.models import ApprovalAnswer, ApprovalRequest
from skillhost.skills.manifest import SkillDescriptor

MOCK_SKILL = Path(__file__).parent / "fixtures" / "mock_skill.py"


class ScriptedPrompter:
    """Approval prompter answering from a table; records every request."""

    def __init__(self, answers: Optional[Dict[str, ApprovalAnswer]] = None, default=ApprovalAnswer.ALWAYS):
        self.answers = answers or {}
        self.default = default
        self.requests: List[ApprovalRequest] = []

    async def __call__(self, request: ApprovalRequest) -> ApprovalAnswer:
        self.requests.append(request)
        return self.answers.get(request.capability.value, self.default)


@pytest.fixture
def settings(tmp_path):
    """Fast settings rooted in a temporary home."""
    return RuntimeSettings(
        home=tmp_path / "home",
        handshake_timeout_s=2.0,
        request_timeout_s=5.0,
        approval_timeout_s=2.0,
        stop_grace_s=1.0,
        abort_grace_s=1.0,
        busy_retry_delay_s=0.1,
        allow_auto_install=False,
        restart=RestartPolicy(max_restarts=2, window_seconds=60.0, backoff_initial_s=0.0),
    )


@pytest.fixture
def make_descriptor():
    """Factory for descriptors running the mock skill with the given env."""

    def _make(
        skill_id: str = "mock-skill",
        capabilities=("file_read",),
        prompt_method: str = "invoke",
        **env: str,
    ) -> SkillDescriptor:
        return SkillDescriptor(
            skill_id=skill_id,
            name="Mock Skill",
            version="1.0.0",
            entry={"command": [sys.executable, str(MOCK_SKILL)], "env": env},
            capabilities=list(capabilities),
            prompt_method=prompt_method,
        )

    return _make


@pytest.fixture
def method_log(tmp_path):
    """File the mock skill appends received method names to."""
    path = tmp_path / "methods.log"

    def read() -> List[str]:
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").split()

    read.path = str(path)
    return read


@pytest.fixture
def make_prompter():
    """Factory for ScriptedPrompter instances."""
    return ScriptedPrompter

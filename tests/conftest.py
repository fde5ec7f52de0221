"""Shared fixtures: a scratch project and a scripted fake agent."""

import json
import shlex
import sys
from pathlib import Path

import pytest

from korero.config import LoopConfig, load_config

FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_agent.py"

FIX_PLAN = """# Fix plan

- [x] Set up project
- [ ] Implement parser
- [ ] Write parser tests
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project directory with a .korero/ folder, prompt and fix plan."""
    root = tmp_path / "project"
    korero_dir = root / ".korero"
    korero_dir.mkdir(parents=True)
    (korero_dir / "PROMPT.md").write_text("Build the parser described in specs/.\n")
    (korero_dir / "fix_plan.md").write_text(FIX_PLAN)
    return root


@pytest.fixture
def config(project: Path) -> LoopConfig:
    return load_config(project, environ={})


class FakeAgent:
    """Scripts the fake agent's responses and reads back what it saw."""

    def __init__(self, directory: Path):
        self.scenario = directory / "scenario.json"

    def configure(self, config: LoopConfig, responses: list[dict]) -> LoopConfig:
        self.scenario.write_text(json.dumps({"responses": responses}))
        config.agent_command = " ".join(
            shlex.quote(part) for part in (sys.executable, str(FAKE_AGENT), str(self.scenario))
        )
        return config

    @property
    def calls(self) -> int:
        path = self.scenario.with_suffix(".calls")
        return int(path.read_text()) if path.exists() else 0

    @property
    def last_prompt(self) -> str:
        return self.scenario.with_suffix(".prompt").read_text()

    @property
    def last_args(self) -> list[str]:
        return json.loads(self.scenario.with_suffix(".args").read_text())


@pytest.fixture
def fake_agent(tmp_path: Path) -> FakeAgent:
    agent_dir = tmp_path / "agent"
    agent_dir.mkdir()
    return FakeAgent(agent_dir)


def status_block(
    status: str = "IN_PROGRESS",
    exit_signal: bool = False,
    files_modified: int = 0,
    work_type: str = "IMPLEMENTATION",
    summary: str = "Working on the next task.",
) -> str:
    return (
        f"{summary}\n"
        "---KORERO_STATUS---\n"
        f"STATUS: {status}\n"
        "TASKS_COMPLETED_THIS_LOOP: 0\n"
        f"FILES_MODIFIED: {files_modified}\n"
        "TESTS_STATUS: NOT_RUN\n"
        f"WORK_TYPE: {work_type}\n"
        f"EXIT_SIGNAL: {'true' if exit_signal else 'false'}\n"
        "RECOMMENDATION: Continue with the fix plan\n"
        "---END_KORERO_STATUS---\n"
    )

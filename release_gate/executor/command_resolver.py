"""
Command Resolver
================
Turns pipeline settings into the concrete command lines each stage runs.

Resolver never executes commands; it only returns frozen descriptions.
Commands are passed to the Process Runner for execution.

Deterministic: same settings -> same commands, in the same order, always.
"""
import os
import re
import shlex
from dataclasses import dataclass
from typing import Optional

from release_gate.core.constants import GATE_CHECKS, PHASE_INTEGRATION, PHASE_UNIT
from release_gate.core.settings import CISettings


@dataclass(frozen=True)
class GateCheck:
    """One quality gate check: name + shell command."""
    name: str
    command: str


@dataclass(frozen=True)
class PhaseCommand:
    """
    One test-runner phase.

    Fields
    ------
    phase : str
        "unit" or "integration".
    command : str
        Shell command line.
    working_dir : str
        Sub-directory of the checkout the command runs in ("" = root).
    """
    phase: str
    command: str
    working_dir: str = ""


@dataclass(frozen=True)
class ToolchainCommands:
    """
    Commands for provisioning a pinned toolchain.

    Fields
    ------
    toolchain : str
        Pinned toolchain identifier, e.g. "nightly-2022-08-08".
    list_command : str
        Lists installed toolchains (idempotency check).
    disable_self_update : str
        Stops the installer from updating itself mid-run.
    install_command : str
        Installs the toolchain with the requested profile.
    component_commands : tuple[str, ...]
        One command per required component (lint tool, formatter).
    """
    toolchain: str
    list_command: str
    disable_self_update: str
    install_command: str
    component_commands: tuple[str, ...] = ()


_CHANNEL_RE = re.compile(r'^\s*channel\s*=\s*"([^"]+)"', re.MULTILINE)


def read_toolchain_file(path: str) -> Optional[str]:
    """
    Read the pinned toolchain from a ``rust-toolchain`` style file.

    Accepts both the legacy one-line form (``nightly-2022-08-08``) and the
    TOML form (``[toolchain]\\nchannel = "nightly-2022-08-08"``).
    Returns None if the file is missing or empty.
    """
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()

    match = _CHANNEL_RE.search(content)
    if match:
        return match.group(1).strip()

    for line in content.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return line
    return None


def resolve_toolchain_commands(
    toolchain: str,
    profile: str = "minimal",
    components: Optional[list[str]] = None,
) -> ToolchainCommands:
    """Build the rustup invocations for ``toolchain``."""
    quoted = shlex.quote(toolchain)
    return ToolchainCommands(
        toolchain=toolchain,
        list_command="rustup toolchain list",
        disable_self_update="rustup set auto-self-update disable",
        install_command=f"rustup toolchain install {quoted} --profile {shlex.quote(profile)}",
        component_commands=tuple(
            f"rustup component add {shlex.quote(c)} --toolchain {quoted}"
            for c in (components or [])
        ),
    )


def resolve_gate_checks(settings: CISettings) -> list[GateCheck]:
    """Quality gate checks in fixed order: license, lint, format."""
    return [GateCheck(name=name, command=settings.gates[name]) for name in GATE_CHECKS]


def resolve_test_phases(settings: CISettings) -> list[PhaseCommand]:
    """Test phases in fixed order: unit in the checkout root, then the integration harness."""
    return [
        PhaseCommand(phase=PHASE_UNIT, command=settings.unit_test_command),
        PhaseCommand(
            phase=PHASE_INTEGRATION,
            command=settings.integration_command,
            working_dir=settings.integration_dir,
        ),
    ]

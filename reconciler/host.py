"""Host resource handle: filesystem root plus the command runner adapters use."""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from reconciler.constants import DEFAULT_COMMAND_TIMEOUT
from reconciler.exceptions import Fatal, TransientExternal
from reconciler.utils import log


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Interface every adapter uses to touch external tooling."""

    def run(
        self,
        argv: List[str],
        check: bool = False,
        input: Optional[str] = None,
        as_user: Optional[str] = None,
        secret: bool = False,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        raise NotImplementedError

    def which(self, name: str) -> Optional[str]:
        raise NotImplementedError


def _describe(argv: List[str], secret: bool) -> str:
    if secret and len(argv) > 2:
        return " ".join(argv[:2] + ["***"])
    return " ".join(argv)


class SubprocessRunner(CommandRunner):
    """Run commands locally; each one is killed after ``timeout`` seconds."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.timeout = timeout

    def run(
        self,
        argv: List[str],
        check: bool = False,
        input: Optional[str] = None,
        as_user: Optional[str] = None,
        secret: bool = False,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        cmd = list(argv)
        if as_user:
            cmd = ["sudo", "-u", as_user, "-H", "--"] + cmd
        log("DEBUG", f"Running: {_describe(cmd, secret)}")
        try:
            proc = subprocess.run(
                cmd, input=input, capture_output=True, text=True, timeout=timeout or self.timeout
            )
        except FileNotFoundError as exc:
            raise Fatal(f"Required tool '{cmd[0]}' is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransientExternal(f"{_describe(cmd, secret)} timed out after {exc.timeout:g}s") from exc
        result = CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
        if check and not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            raise Fatal(f"{_describe(cmd, secret)} failed ({result.returncode}): {detail}")
        return result

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


@dataclass
class HostContext:
    """Explicit handle on the host being reconciled.

    ``root`` is prepended to every absolute path so the same adapters run
    against a scratch directory in tests.
    """

    root: Path = Path("/")
    runner: CommandRunner = field(default_factory=SubprocessRunner)

    def path(self, target: Union[str, Path]) -> Path:
        target = Path(target)
        if target.is_absolute():
            target = target.relative_to("/")
        return self.root / target

    def run(self, argv: List[str], **kwargs) -> CommandResult:
        return self.runner.run(argv, **kwargs)

    def has(self, tool: str) -> bool:
        return self.runner.which(tool) is not None

    def require(self, tool: str) -> None:
        if not self.has(tool):
            raise Fatal(f"Required tool '{tool}' is not installed")

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        if not self.stderr:
            return self.stdout
        return (self.stdout or "") + "\n" + self.stderr


class SandboxEnvironment(Protocol):
    """A disposable workspace seeded from one source ref + branch."""

    async def run(self, argv: Sequence[str], *, timeout_s: Optional[float] = None) -> CommandResult:
        ...

    def set_env(self, key: str, value: str) -> None:
        ...

    async def read_file(self, path: str) -> Optional[str]:
        ...

    async def file_exists(self, path: str) -> bool:
        ...

    async def close(self) -> None:
        ...


class SandboxProvider(Protocol):
    async def start(self, *, base_image: str, source_ref: str, branch: Optional[str]) -> SandboxEnvironment:
        ...

"""测试用的假命令执行器。"""

from __future__ import annotations

import dataclasses
from pathlib import Path

from deployhook.deploy_runner import CommandResult

SECRET = "s3cr3t"


@dataclasses.dataclass
class RecordedCall:
    program: str
    args: list[str]
    cwd: Path | None
    timeout: float | None


def ok_result(stdout: str = "") -> CommandResult:
    return CommandResult(returncode=0, stdout=stdout, stderr="", duration=0.01)


def failed_result(returncode: int = 1, stderr: str = "boom") -> CommandResult:
    return CommandResult(returncode=returncode, stdout="", stderr=stderr, duration=0.01)


class FakeRunner:
    """记录调用并按程序名返回预设结果；clone 成功时创建 .git 目录。"""

    def __init__(self, results: dict[str, CommandResult] | None = None) -> None:
        self.results = results or {}
        self.calls: list[RecordedCall] = []

    def run(
        self,
        program: str,
        args: list[str],
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append(RecordedCall(program, list(args), cwd, timeout))
        result = self.results.get(program, ok_result())
        if program == "git" and args[:1] == ["clone"] and result.ok:
            (Path(args[2]) / ".git").mkdir(parents=True)
        return result

    @property
    def argv(self) -> list[list[str]]:
        return [[c.program, *c.args] for c in self.calls]

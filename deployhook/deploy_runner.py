"""
部署执行：同步本地仓库（已存在则 git pull，否则 git clone），然后在仓库目录执行 deploy_command。
依赖：本机已安装 git，并配置好访问远端仓库的 SSH key 或 GIT_TOKEN。

注意：默认不设超时（command_timeout 未配置时），长时间运行的部署脚本会一直占用工作线程。
git pull / git clone 不指定分支：克隆得到远端默认分支，pull 跟随工作副本当前分支的上游。
配置的 branch 只用于匹配 Webhook，若与远端默认分支不同，需要事先在工作副本中切换好分支。
"""
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from deployhook.config import DEFAULT_REMOTE_HOST, RepositoryRule

logger = logging.getLogger(__name__)

GIT = "git"
GIT_MARKER = ".git"


@dataclass(frozen=True)
class CommandResult:
    """单次子进程调用的结果；returncode 为 None 表示进程未能启动或超时。"""

    returncode: int | None
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def run(
        self,
        program: str,
        args: list[str],
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """通过 subprocess.run 同步执行命令并捕获输出。"""

    def run(
        self,
        program: str,
        args: list[str],
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        start = time.monotonic()
        try:
            r = subprocess.run(
                [program, *args],
                cwd=str(cwd) if cwd is not None else None,
                env=os.environ.copy(),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                returncode=None,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr) + f"\ntimed out after {timeout}s",
                duration=time.monotonic() - start,
            )
        except OSError as e:
            return CommandResult(
                returncode=None,
                stdout="",
                stderr=str(e),
                duration=time.monotonic() - start,
            )
        return CommandResult(r.returncode, r.stdout or "", r.stderr or "", time.monotonic() - start)


def _as_text(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


@dataclass(frozen=True)
class DeploymentJob:
    """一次部署任务；rule 为触发时的配置快照。"""

    repository: str
    rule: RepositoryRule
    git_token: str | None = None
    remote_host: str = DEFAULT_REMOTE_HOST
    timeout: float | None = None


class DeploymentError(Exception):
    step = "deploy"

    def __init__(self, message: str, result: CommandResult | None = None):
        super().__init__(message)
        self.result = result

    @property
    def exit_code(self) -> int | None:
        return self.result.returncode if self.result else None


class SyncError(DeploymentError):
    step = "sync"


class DeployError(DeploymentError):
    step = "deploy_command"


def remote_url(repository: str, remote_host: str = DEFAULT_REMOTE_HOST, token: str | None = None) -> str:
    if token:
        return f"https://x-access-token:{token}@{remote_host}/{repository}.git"
    return f"git@{remote_host}:{repository}.git"


def split_command(command: str) -> tuple[str, list[str]] | None:
    """按空白切分为 (program, args)，不支持引号与 shell 语法。"""
    parts = command.split()
    if not parts:
        return None
    return parts[0], parts[1:]


def _redact(text: str, token: str | None) -> str:
    return text.replace(token, "***") if token else text


def _run(
    runner: CommandRunner,
    job: DeploymentJob,
    program: str,
    args: list[str],
    cwd: Path | None,
) -> CommandResult:
    cmd_str = _redact(" ".join([program, *args]), job.git_token)
    logger.debug("[deploy] 执行命令 repo=%s cmd=%s cwd=%s", job.repository, cmd_str, cwd)
    r = runner.run(program, args, cwd=cwd, timeout=job.timeout)
    if r.stdout:
        logger.debug(
            "[deploy] stdout repo=%s cmd=%s:\n%s",
            job.repository,
            cmd_str,
            _redact(r.stdout.strip(), job.git_token),
        )
    if r.stderr:
        logger.warning(
            "[deploy] stderr repo=%s cmd=%s:\n%s",
            job.repository,
            cmd_str,
            _redact(r.stderr.strip(), job.git_token),
        )
    if not r.ok:
        logger.error(
            "[deploy] 命令失败 repo=%s cmd=%s returncode=%s duration_ms=%d",
            job.repository,
            cmd_str,
            r.returncode,
            r.duration * 1000,
        )
    else:
        logger.debug(
            "[deploy] 命令完成 repo=%s cmd=%s duration_ms=%d",
            job.repository,
            cmd_str,
            r.duration * 1000,
        )
    return r


def sync_repository(job: DeploymentJob, runner: CommandRunner) -> str:
    """
    同步工作副本：路径含 .git 则 pull，路径不存在则 clone。
    路径存在但不是 git 仓库时抛 SyncError，不覆盖已有内容。
    返回执行的操作名 "pull" 或 "clone"。
    """
    path = Path(job.rule.path)
    if (path / GIT_MARKER).exists():
        logger.info("[deploy] 仓库已存在，拉取更新 repo=%s path=%s", job.repository, path)
        r = _run(runner, job, GIT, ["pull"], path)
        if not r.ok:
            raise SyncError(f"git pull 失败 returncode={r.returncode}", r)
        return "pull"

    if path.exists():
        raise SyncError(f"路径已存在但不是 git 仓库: {path}")

    logger.info("[deploy] 仓库不存在，开始克隆 repo=%s path=%s", job.repository, path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SyncError(f"创建父目录失败 {path.parent}: {e}") from e
    url = remote_url(job.repository, job.remote_host, job.git_token)
    r = _run(runner, job, GIT, ["clone", url, str(path)], None)
    if not r.ok:
        raise SyncError(f"git clone 失败 returncode={r.returncode}", r)
    return "clone"


def run_deploy_command(job: DeploymentJob, runner: CommandRunner) -> CommandResult | None:
    """在仓库目录执行 deploy_command；未配置时返回 None。"""
    if not job.rule.deploy_command:
        logger.debug("[deploy] 未配置 deploy_command repo=%s", job.repository)
        return None
    parsed = split_command(job.rule.deploy_command)
    if parsed is None:
        return None
    program, args = parsed
    logger.info("[deploy] 执行部署命令 repo=%s cmd=%s", job.repository, job.rule.deploy_command)
    r = _run(runner, job, program, args, Path(job.rule.path))
    if not r.ok:
        raise DeployError(f"{program} 退出码非 0 returncode={r.returncode}", r)
    return r


def run_deployment(job: DeploymentJob, runner: CommandRunner | None = None) -> bool:
    """
    同步执行：sync -> deploy_command。
    失败不重试，记录仓库、失败步骤、耗时与输出后返回 False。
    """
    runner = runner or SubprocessRunner()
    start = time.monotonic()
    logger.info("[deploy] 开始部署 repo=%s path=%s", job.repository, job.rule.path)
    try:
        action = sync_repository(job, runner)
        run_deploy_command(job, runner)
    except DeploymentError as e:
        output = ""
        if e.result is not None:
            output = _redact((e.result.stdout + e.result.stderr).strip(), job.git_token)
        logger.error(
            "[deploy] 部署失败 repo=%s step=%s exit_code=%s duration_ms=%d error=%s output=%s",
            job.repository,
            e.step,
            e.exit_code,
            (time.monotonic() - start) * 1000,
            _redact(str(e), job.git_token),
            output[-2000:],
        )
        return False
    logger.info(
        "[deploy] 部署完成 repo=%s action=%s duration_ms=%d",
        job.repository,
        action,
        (time.monotonic() - start) * 1000,
    )
    return True

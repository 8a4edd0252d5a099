"""
后台派发：把部署任务提交为独立的 asyncio 任务，请求立即返回。
同一仓库的任务按提交顺序串行执行（每仓库一把 asyncio.Lock），不同仓库并行。
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from deployhook.config import RepositoryRule, Settings
from deployhook.deploy_runner import CommandRunner, DeploymentJob, run_deployment

logger = logging.getLogger(__name__)

JobFunc = Callable[[DeploymentJob], bool]


class Dispatcher:
    def __init__(self, settings: Settings, runner: CommandRunner | None = None, job_func: JobFunc | None = None):
        self._settings = settings
        self._runner = runner
        self._job_func = job_func
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _lock_for(self, repository: str) -> asyncio.Lock:
        lock = self._locks.get(repository)
        if lock is None:
            lock = self._locks[repository] = asyncio.Lock()
        return lock

    def make_job(self, repository: str, rule: RepositoryRule) -> DeploymentJob:
        return DeploymentJob(
            repository=repository,
            rule=replace(rule),
            git_token=self._settings.git_token,
            remote_host=self._settings.remote_host,
            timeout=self._settings.command_timeout,
        )

    def submit(self, repository: str, rule: RepositoryRule) -> asyncio.Task:
        """提交部署任务，不等待结果；结果只体现在日志中。"""
        job = self.make_job(repository, rule)

        def _on_done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                logger.error("部署任务被取消 repo=%s", repository)
            else:
                ex = t.exception()
                if ex is not None:
                    logger.error("部署任务异常 repo=%s: %s", repository, ex, exc_info=ex)

        task = asyncio.create_task(self._execute(job), name=f"deploy:{repository}")
        self._tasks.add(task)
        task.add_done_callback(_on_done)
        logger.info("已提交部署后台任务 repo=%s pending=%s", repository, len(self._tasks))
        return task

    async def _execute(self, job: DeploymentJob) -> bool:
        lock = self._lock_for(job.repository)
        if lock.locked():
            logger.info("[dispatch] 同仓库部署进行中，排队等待 repo=%s", job.repository)
        async with lock:
            loop = asyncio.get_running_loop()
            if self._job_func is not None:
                return await loop.run_in_executor(None, self._job_func, job)
            return await loop.run_in_executor(None, run_deployment, job, self._runner)

    async def join(self) -> None:
        """等待所有已提交的任务结束（关闭服务时与测试中使用）。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

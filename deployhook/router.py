"""
按仓库名与分支匹配配置，决定是否触发部署。
"""
from collections.abc import Mapping
from dataclasses import dataclass

from deployhook.config import RepositoryRule
from deployhook.github import WebhookEvent


@dataclass(frozen=True)
class NoSuchRepo:
    repository: str


@dataclass(frozen=True)
class BranchMismatch:
    repository: str
    received_ref: str
    expected_ref: str


@dataclass(frozen=True)
class Trigger:
    repository: str
    rule: RepositoryRule


Decision = NoSuchRepo | BranchMismatch | Trigger


def route(event: WebhookEvent, rules: Mapping[str, RepositoryRule]) -> Decision:
    """
    仓库名精确匹配（区分大小写），ref 与配置的 branch 做完整字符串比较，
    不做 refs/heads/ 归一化。
    """
    rule = rules.get(event.repository)
    if rule is None:
        return NoSuchRepo(event.repository)
    if event.ref != rule.branch:
        return BranchMismatch(event.repository, event.ref, rule.branch)
    return Trigger(event.repository, rule)

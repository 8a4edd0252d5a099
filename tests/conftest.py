"""公共测试夹具。"""

from __future__ import annotations

import typing as typ
from pathlib import Path
from types import MappingProxyType

import pytest

from deployhook.config import RepositoryRule, Settings
from tests.helpers import SECRET, FakeRunner


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def site_rule(tmp_path: Path) -> RepositoryRule:
    return RepositoryRule(
        path=str(tmp_path / "srv" / "site"),
        branch="refs/heads/main",
        deploy_command="make deploy",
    )


@pytest.fixture
def make_settings() -> typ.Callable[..., Settings]:
    def _make(repos: dict[str, RepositoryRule] | None = None, **kwargs: typ.Any) -> Settings:
        return Settings(secret=SECRET, repos=MappingProxyType(repos or {}), **kwargs)

    return _make

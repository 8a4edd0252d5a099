"""
GitHub Webhook 签名校验与 push payload 解析。
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"

SIGNATURE_PREFIX = "sha256="


class PayloadError(ValueError):
    """body 不是合法 JSON。"""


@dataclass(frozen=True)
class WebhookEvent:
    """单次请求解析出的 push 事件，路由判定后即丢弃。"""

    repository: str
    ref: str
    sender: str | None = None
    commit_count: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.repository and not self.ref


def verify_signature(secret: str, body: bytes, signature_256: str | None) -> bool:
    """
    使用 HMAC-SHA256 校验 GitHub Webhook 签名。
    X-Hub-Signature-256 格式为 "sha256=<hex>"，前缀可省略。
    比较使用 hmac.compare_digest（常数时间）。
    """
    if not secret or not signature_256:
        return False
    provided = signature_256
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    try:
        provided_bytes = provided.encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), provided_bytes)


def _get_str(data: Any, *path: str) -> str | None:
    node = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, str) else None


def parse_payload(body: bytes) -> WebhookEvent:
    """
    解析 push 事件 body：返回 repository.full_name、ref，
    以及可选的 sender.login 与 commits 数量。
    缺失或非字符串的必需字段记为空串，由路由层视为不匹配。
    """
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise PayloadError(f"invalid JSON body: {e}") from e

    commits = data.get("commits") if isinstance(data, dict) else None
    event = WebhookEvent(
        repository=_get_str(data, "repository", "full_name") or "",
        ref=_get_str(data, "ref") or "",
        sender=_get_str(data, "sender", "login"),
        commit_count=len(commits) if isinstance(commits, list) else None,
    )
    logger.debug(
        "解析 payload repo=%s ref=%s sender=%s commits=%s",
        event.repository,
        event.ref,
        event.sender or "unknown",
        event.commit_count,
    )
    return event

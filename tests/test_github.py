"""签名校验与 payload 解析的单元测试。"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest

from deployhook import github
from deployhook.github import PayloadError, WebhookEvent, parse_payload, verify_signature

SECRET = "s3cr3t"
BODY = b'{"repository":{"full_name":"acme/site"},"ref":"refs/heads/main"}'


def _digest(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestVerifySignature:
    """verify_signature 的行为。"""

    @pytest.mark.parametrize("body", [b"", b"{}", BODY, bytes(range(256))])
    def test_accepts_prefixed_digest(self, body: bytes) -> None:
        assert verify_signature(SECRET, body, "sha256=" + _digest(SECRET, body)) is True

    def test_accepts_bare_digest(self) -> None:
        assert verify_signature(SECRET, BODY, _digest(SECRET, BODY)) is True

    @pytest.mark.parametrize("bit", [0, 7, 100, 255])
    def test_rejects_single_bit_flip(self, bit: int) -> None:
        raw = bytearray(hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest())
        raw[bit // 8] ^= 1 << (bit % 8)
        assert verify_signature(SECRET, BODY, "sha256=" + raw.hex()) is False

    def test_rejects_tampered_body(self) -> None:
        signature = "sha256=" + _digest(SECRET, BODY)
        assert verify_signature(SECRET, BODY + b" ", signature) is False

    def test_rejects_wrong_secret(self) -> None:
        assert verify_signature(SECRET, BODY, "sha256=" + _digest("other", BODY)) is False

    @pytest.mark.parametrize("header", ["", None, "sha256=", "sha1=abc", "sha256=zz"])
    def test_rejects_malformed_header(self, header: str | None) -> None:
        assert verify_signature(SECRET, BODY, header) is False

    def test_rejects_empty_secret(self) -> None:
        assert verify_signature("", BODY, "sha256=" + _digest("", BODY)) is False

    def test_non_ascii_header_is_rejected_without_raising(self) -> None:
        assert verify_signature(SECRET, BODY, "sha256=签名") is False

    def test_comparison_uses_compare_digest(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """比较必须走常数时间的 hmac.compare_digest。"""
        calls: list[tuple[bytes, bytes]] = []
        real = hmac.compare_digest

        def spy(a: bytes, b: bytes) -> bool:
            calls.append((a, b))
            return real(a, b)

        monkeypatch.setattr(github.hmac, "compare_digest", spy)
        assert verify_signature(SECRET, BODY, "sha256=" + _digest(SECRET, BODY)) is True
        assert len(calls) == 1

    def test_timing_does_not_depend_on_matching_prefix(self) -> None:
        """首字节错与末字节错的签名，校验耗时应处于同一量级。"""
        expected = _digest(SECRET, BODY)
        first_wrong = "sha256=" + ("0" if expected[0] != "0" else "1") + expected[1:]
        last_wrong = "sha256=" + expected[:-1] + ("0" if expected[-1] != "0" else "1")

        def best_of(header: str) -> float:
            samples = []
            for _ in range(7):
                start = time.perf_counter()
                for _ in range(2000):
                    verify_signature(SECRET, BODY, header)
                samples.append(time.perf_counter() - start)
            return min(samples)

        ratio = best_of(last_wrong) / best_of(first_wrong)
        assert 1 / 3 < ratio < 3


class TestParsePayload:
    """parse_payload 的字段提取。"""

    def test_extracts_push_fields(self) -> None:
        body = json.dumps(
            {
                "repository": {"full_name": "acme/site", "name": "site"},
                "ref": "refs/heads/main",
                "sender": {"login": "octocat"},
                "commits": [{"id": "a"}, {"id": "b"}],
                "unknown": {"nested": True},
            }
        ).encode()

        assert parse_payload(body) == WebhookEvent(
            repository="acme/site",
            ref="refs/heads/main",
            sender="octocat",
            commit_count=2,
        )

    def test_optional_fields_absent(self) -> None:
        event = parse_payload(BODY)
        assert event.sender is None
        assert event.commit_count is None

    def test_missing_ref_gives_empty_string(self) -> None:
        event = parse_payload(b'{"repository":{"full_name":"acme/site"}}')
        assert event.repository == "acme/site"
        assert event.ref == ""
        assert event.is_empty is False

    def test_non_string_fields_give_empty_strings(self) -> None:
        event = parse_payload(b'{"repository":{"full_name":42},"ref":["refs/heads/main"]}')
        assert event.repository == ""
        assert event.ref == ""
        assert event.is_empty is True

    def test_repository_not_an_object(self) -> None:
        event = parse_payload(b'{"repository":"acme/site","ref":"refs/heads/main"}')
        assert event.repository == ""
        assert event.ref == "refs/heads/main"

    def test_commits_not_a_list_is_ignored(self) -> None:
        event = parse_payload(b'{"ref":"refs/heads/main","commits":"many"}')
        assert event.commit_count is None

    @pytest.mark.parametrize("body", [b"[1, 2]", b'"text"', b"null"])
    def test_non_object_json_gives_empty_event(self, body: bytes) -> None:
        assert parse_payload(body).is_empty is True

    @pytest.mark.parametrize(
        "body",
        [b"", b"{not json", b"\xff\xfe\x00", b"[" * 200_000 + b"]" * 200_000],
        ids=["empty", "broken", "bad-encoding", "too-deep"],
    )
    def test_invalid_json_raises(self, body: bytes) -> None:
        with pytest.raises(PayloadError):
            parse_payload(body)

import json

import httpx
import pytest

from chunksub.exceptions import (
    AuthenticationMissing,
    BackendRejected,
    BackendUnavailable,
    OperationCancelled,
    OptimizationFailed,
)
from chunksub.models import SubtitleCue
from chunksub.optimizer import (
    OpenAICompatibleCorrectionBackend,
    SubtitleOptimizer,
    apply_corrections,
    build_request,
    extract_json_object,
)
from chunksub.retry import RetryExecutor
from chunksub.utils import CancellationToken

from conftest import FakeCorrectionBackend


@pytest.fixture
def cues():
    return [
        SubtitleCue(1, 0, 1_000, "um hello wrld"),
        SubtitleCue(2, 1_000, 2_000, "this is uh a test"),
        SubtitleCue(3, 2_000, 3_000, "keep me"),
    ]


@pytest.fixture
def optimizer():
    return SubtitleOptimizer(RetryExecutor(max_attempts=2, base_delay=0.0, sleep=lambda _: None))


def test_missing_key_keeps_original_text(optimizer, cues):
    backend = FakeCorrectionBackend([json.dumps({"0": "Hello world.", "1": "This is a test."})])

    result = optimizer.optimize(cues, backend)

    assert [c.text for c in result] == ["Hello world.", "This is a test.", "keep me"]
    assert [(c.index, c.start_ms, c.end_ms) for c in result] == [(c.index, c.start_ms, c.end_ms) for c in cues]


def test_request_uses_zero_based_positions(cues):
    prompt = build_request(cues, "Use British spelling")
    payload = prompt[prompt.index("{"):prompt.index("}") + 1]
    assert json.loads(payload) == {"0": "um hello wrld", "1": "this is uh a test", "2": "keep me"}
    assert "Use British spelling" in prompt


def test_fenced_reply_with_prose(optimizer, cues):
    reply = 'Sure! Here you go:\n```json\n{"2": "Keep me."}\n```\nAnything else?'
    result = optimizer.optimize(cues, FakeCorrectionBackend([reply]))
    assert [c.text for c in result] == ["um hello wrld", "this is uh a test", "Keep me."]


def test_unparseable_reply_returns_originals(optimizer, cues):
    result = optimizer.optimize(cues, FakeCorrectionBackend(["I cannot help with that."]))
    assert result == cues


def test_failed_call_returns_originals(optimizer, cues):
    backend = FakeCorrectionBackend([BackendUnavailable("503"), BackendUnavailable("503")])
    assert optimizer.optimize(cues, backend) == cues


def test_transient_failure_is_retried(optimizer, cues):
    backend = FakeCorrectionBackend([BackendUnavailable("503"), '{"0": "Hello world."}'])
    result = optimizer.optimize(cues, backend)
    assert result[0].text == "Hello world."
    assert len(backend.prompts) == 2


def test_cancellation_propagates(optimizer, cues):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        optimizer.optimize(cues, FakeCorrectionBackend(['{}']), cancel_token=token)


def test_empty_input_skips_backend(optimizer):
    backend = FakeCorrectionBackend([])
    assert optimizer.optimize([], backend) == []
    assert backend.prompts == []


class TestExtractJsonObject:
    def test_bare_object(self):
        assert extract_json_object('{"0": "a", "1": "b"}') == {"0": "a", "1": "b"}

    def test_object_inside_prose(self):
        assert extract_json_object('Result: {"0": "a"} -- done') == {"0": "a"}

    def test_non_string_values_are_ignored(self):
        assert extract_json_object('{"0": "a", "1": 5, "2": null}') == {"0": "a"}

    def test_no_object(self):
        with pytest.raises(OptimizationFailed):
            extract_json_object("nothing here")


def test_apply_corrections_ignores_blank_text(cues):
    result = apply_corrections(cues, {"0": "  ", "1": " Fixed. "})
    assert [c.text for c in result] == ["um hello wrld", "Fixed.", "keep me"]


class TestOpenAICompatibleCorrectionBackend:
    def _backend(self, handler, api_key="sk-test"):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return OpenAICompatibleCorrectionBackend("https://llm.example.test", api_key, "gpt-test", client=client)

    def test_posts_chat_completion(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": '{"0": "x"}'}}]})

        reply = self._backend(handler).complete("system", "user")

        assert reply == '{"0": "x"}'
        assert seen["url"] == "https://llm.example.test/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-test"
        assert seen["body"]["temperature"] == 0.3
        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]

    @pytest.mark.parametrize("status, error", [(429, BackendUnavailable), (500, BackendUnavailable),
                                               (400, BackendRejected)])
    def test_status_mapping(self, status, error):
        backend = self._backend(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(error):
            backend.complete("s", "u")

    def test_empty_content(self):
        backend = self._backend(lambda request: httpx.Response(200, json={"choices": [{"message": {"content": ""}}]}))
        with pytest.raises(OptimizationFailed):
            backend.complete("s", "u")

    def test_missing_key(self):
        backend = self._backend(lambda request: httpx.Response(200), api_key=None)
        with pytest.raises(AuthenticationMissing):
            backend.complete("s", "u")

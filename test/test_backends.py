"""
Tests for the model backends
"""

import json

import httpx
import pytest
from backends import EchoBackend, HTTPBackend, ScriptedBackend, create_backend
from effects import DispatcherConfig
from error_handling import ModelError
from runner import WorkflowRunner


class TestScriptedBackend:

    def test_replays_in_order_then_uses_responder(self):
        backend = ScriptedBackend(["one", "two"], responder=lambda context, template: "fallback")
        assert [backend.invoke(None, "t") for _ in range(3)] == ["one", "two", "fallback"]
        assert backend.call_count == 3

    def test_queued_exceptions_and_callables(self):
        backend = ScriptedBackend([ConnectionError("down"), lambda context, template: template * 2])
        with pytest.raises(ConnectionError):
            backend.invoke({}, "x")
        assert backend.invoke({}, "ab") == "abab"

    def test_empty_queue_is_a_rejection(self):
        with pytest.raises(ModelError) as exc_info:
            ScriptedBackend().invoke("input", "t")
        assert exc_info.value.is_permanent

    def test_records_calls(self):
        backend = ScriptedBackend(["ok"])
        backend.invoke({"a": 1}, "template")
        assert backend.calls == [({"a": 1}, "template")]

    def test_from_file(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text(json.dumps(["a", "b"]), encoding="utf-8")
        backend = ScriptedBackend.from_file(str(path))
        assert backend.invoke(None, "t") == "a"

        path.write_text(json.dumps({"a": 1}), encoding="utf-8")
        with pytest.raises(ValueError):
            ScriptedBackend.from_file(str(path))


def test_echo_backend():
    reply = json.loads(EchoBackend().invoke({"k": [1]}, "tmpl"))
    assert reply == {"template": "tmpl", "input": {"k": [1]}}


class TestHTTPBackend:
    """The gateway protocol, served by an in-process mock transport"""

    def backend_for(self, handler):
        return HTTPBackend("http://gateway.test/invoke", transport=httpx.MockTransport(handler))

    def test_json_output(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"output": "hi there"})

        backend = self.backend_for(handler)
        assert backend.invoke({"q": 1}, "say hi") == "hi there"
        assert seen == [{"template": "say hi", "input": {"q": 1}}]
        backend.close()

    def test_plain_text_output(self):
        backend = self.backend_for(lambda request: httpx.Response(200, text="plain answer"))
        assert backend.invoke(None, "t") == "plain answer"

    def test_json_without_output_field(self):
        backend = self.backend_for(lambda request: httpx.Response(200, json={"text": "x"}))
        with pytest.raises(ModelError) as exc_info:
            backend.invoke(None, "t")
        assert exc_info.value.subkind == "backend_failure"

    @pytest.mark.parametrize("status, kind, subkind", [
        (429, ModelError.TRANSIENT, "rate_limit"),
        (503, ModelError.TRANSIENT, "server_error"),
        (400, ModelError.PERMANENT, "rejected"),
        (401, ModelError.PERMANENT, "rejected"),
    ])
    def test_status_classification(self, status, kind, subkind):
        backend = self.backend_for(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(ModelError) as exc_info:
            backend.invoke(None, "t")
        assert exc_info.value.kind == kind
        assert exc_info.value.subkind == subkind

    def test_transport_failures_are_transient(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        def stall(request):
            raise httpx.ReadTimeout("slow", request=request)

        for handler, subkind in [(refuse, "network"), (stall, "timeout")]:
            with pytest.raises(ModelError) as exc_info:
                self.backend_for(handler).invoke(None, "t")
            assert exc_info.value.is_transient
            assert exc_info.value.subkind == subkind

    def test_server_error_is_retried_by_the_dispatcher(self):
        replies = [httpx.Response(503, text="overloaded"), httpx.Response(200, json={"output": "recovered"})]
        backend = self.backend_for(lambda request: replies.pop(0))
        runner = WorkflowRunner(backend, DispatcherConfig(backoff_base=0.0))
        result = runner.run('fun main(x) = x >> model("answer")', "q")
        assert result.ok, result.error
        assert result.value == "recovered"
        assert replies == []


def test_create_backend_validation():
    assert isinstance(create_backend("echo"), EchoBackend)
    with pytest.raises(ValueError):
        create_backend("scripted")
    with pytest.raises(ValueError):
        create_backend("http")
    with pytest.raises(ValueError):
        create_backend("carrier-pigeon")

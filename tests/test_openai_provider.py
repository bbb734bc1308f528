import json

import httpx
import pytest

from engage.services.llm.base import InferenceError
from engage.services.llm.openai_provider import TRANSFER_COURTESY_MESSAGE, OpenAIProvider


def _provider(handler, api_key="sk-test"):
    return OpenAIProvider(api_key=api_key, transport=httpx.MockTransport(handler))


def _completion(message):
    return httpx.Response(200, json={"model": "gpt-4o-mini", "choices": [{"message": message}], "usage": {}})


class TestOpenAIProvider:
    def test_request_shape_and_plain_reply(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return _completion({"role": "assistant", "content": "Olá!"})

        result = _provider(handler).infer(
            [{"role": "user", "content": "oi"}], {"model": "gpt-4o", "system_prompt": "Be nice"}
        )

        assert result.text == "Olá!"
        assert result.needs_human_transfer is False
        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-4o"
        assert seen["body"]["messages"][0] == {"role": "system", "content": "Be nice"}
        assert seen["body"]["tools"][0]["function"]["name"] == "transfer_to_human"

    def test_transfer_tool_call(self):
        def handler(request):
            return _completion(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"type": "function", "function": {"name": "transfer_to_human", "arguments": "{}"}}],
                }
            )

        result = _provider(handler).infer([], {})

        assert result.needs_human_transfer is True
        assert result.text == TRANSFER_COURTESY_MESSAGE

    def test_transfer_marker_is_stripped(self):
        def handler(request):
            return _completion({"role": "assistant", "content": "Um momento. [TRANSFER_TO_HUMAN]"})

        result = _provider(handler).infer([], {})

        assert result.needs_human_transfer is True
        assert result.text == "Um momento."

    def test_http_error_raises(self):
        with pytest.raises(InferenceError):
            _provider(lambda request: httpx.Response(500, text="boom")).infer([], {})

    def test_missing_key_raises(self):
        with pytest.raises(InferenceError):
            _provider(lambda request: _completion({}), api_key=None).infer([], {})

    def test_no_choices_raises(self):
        with pytest.raises(InferenceError):
            _provider(lambda request: httpx.Response(200, json={"choices": []})).infer([], {})

    def test_timeout_raises_inference_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(InferenceError):
            _provider(handler).infer([{"role": "user", "content": "oi"}], {})

    def test_non_json_body_raises_inference_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(InferenceError):
            _provider(handler).infer([{"role": "user", "content": "oi"}], {})

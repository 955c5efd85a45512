import json

import httpx
import pytest
import respx
from httpx import Response

from dualmerge.errors import (
    EMPTY_RESPONSE,
    RATE_LIMITED,
    REGION_UNAVAILABLE,
    TRANSPORT,
    UNKNOWN,
    ProviderError,
)
from dualmerge.providers import ChatCompletionsClient, GeminiClient, is_region_error
from dualmerge.schemas import QuerySettings


GEMINI_URL = "http://gemini.test/v1beta/models/gemini-test:generateContent"
CHAT_URL = "http://chat.test/chat/completions"


def gemini_client(**kwargs) -> GeminiClient:
    return GeminiClient("a", "http://gemini.test/v1beta", "gemini-test", kwargs.pop("api_key", "g-key"), **kwargs)


def chat_client(**kwargs) -> ChatCompletionsClient:
    return ChatCompletionsClient("b", "http://chat.test/", "chat-test", kwargs.pop("api_key", "c-key"), **kwargs)


@pytest.mark.asyncio
async def test_gemini_query_payload_shape_and_text():
    client = gemini_client(max_output_tokens=50)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(
                    200,
                    json={"candidates": [{"content": {"parts": [{"text": "Plants "}, {"text": "grow."}]}}]},
                )

            respx_mock.post(GEMINI_URL).mock(side_effect=handler)
            settings = QuerySettings(temperature=0.4, systemPrompt="Be brief.")
            text = await client.query("How do plants grow?", settings)
            assert text == "Plants grow."
            payload = captured["json"]
            assert payload["contents"][0]["parts"][0]["text"] == "How do plants grow?"
            assert payload["system_instruction"]["parts"][0]["text"] == "Be brief."
            assert payload["generationConfig"] == {"temperature": 0.4, "maxOutputTokens": 50}
            assert captured["headers"]["x-goog-api-key"] == "g-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_completions_payload_shape_and_caps_tokens():
    client = chat_client(max_output_tokens=1000)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"choices": [{"message": {"content": "ok"}}]})

            respx_mock.post(CHAT_URL).mock(side_effect=handler)
            text = await client.query("hi", QuerySettings(temperature=0.5, systemPrompt="sys"))
            assert text == "ok"
            payload = captured["json"]
            assert payload["model"] == "chat-test"
            assert payload["max_tokens"] == 1000
            assert payload["temperature"] == 0.5
            assert payload["stream"] is False
            assert payload["messages"] == [
                {"role": "system", "content": "sys"},
                {"role": "user", "content": "hi"},
            ]
            assert captured["headers"]["Authorization"] == "Bearer c-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_complete_without_system_prompt_sends_only_user_message():
    client = chat_client()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "merged"}}]})

            respx_mock.post(CHAT_URL).mock(side_effect=handler)
            assert await client.complete("merge these", temperature=0.3) == "merged"
            assert captured["json"]["messages"] == [{"role": "user", "content": "merge these"}]
            assert captured["json"]["temperature"] == 0.3
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,kind",
    [
        (429, {"error": {"message": "Rate limit reached"}}, RATE_LIMITED),
        (400, {"error": {"code": 400, "message": "User location is not supported for the API use."}}, REGION_UNAVAILABLE),
        (451, {"error": "blocked"}, REGION_UNAVAILABLE),
        (503, {"error": "overloaded"}, TRANSPORT),
        (401, {"error": {"message": "invalid api key"}}, UNKNOWN),
    ],
)
async def test_gemini_http_errors_are_classified(status, body, kind):
    client = gemini_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GEMINI_URL).mock(return_value=Response(status, json=body))
            with pytest.raises(ProviderError) as excinfo:
                await client.query("q", QuerySettings())
            assert excinfo.value.kind == kind
            assert excinfo.value.status_code == status
            assert excinfo.value.provider_id == "a"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_plain_bad_request_is_not_treated_as_region_error():
    client = chat_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(CHAT_URL).mock(
                return_value=Response(400, json={"error": {"message": "messages must not be empty"}})
            )
            with pytest.raises(ProviderError) as excinfo:
                await client.query("q", QuerySettings())
            assert excinfo.value.kind == UNKNOWN
            assert "messages must not be empty" in excinfo.value.message
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connection_error_is_transport():
    client = chat_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(CHAT_URL).mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(ProviderError) as excinfo:
                await client.query("q", QuerySettings())
            assert excinfo.value.kind == TRANSPORT
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_empty_content_raises_empty_response_for_both_clients():
    gemini = gemini_client()
    chat = chat_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GEMINI_URL).mock(return_value=Response(200, json={"candidates": []}))
            respx_mock.post(CHAT_URL).mock(
                return_value=Response(200, json={"choices": [{"message": {"content": "   "}}]})
            )
            with pytest.raises(ProviderError) as gemini_exc:
                await gemini.query("q", QuerySettings())
            with pytest.raises(ProviderError) as chat_exc:
                await chat.query("q", QuerySettings())
            assert gemini_exc.value.kind == EMPTY_RESPONSE
            assert chat_exc.value.kind == EMPTY_RESPONSE
    finally:
        await gemini.close()
        await chat.close()


@pytest.mark.asyncio
async def test_blocked_prompt_reports_block_reason():
    client = gemini_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GEMINI_URL).mock(
                return_value=Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})
            )
            with pytest.raises(ProviderError) as excinfo:
                await client.query("q", QuerySettings())
            assert excinfo.value.kind == EMPTY_RESPONSE
            assert "SAFETY" in excinfo.value.message
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_network_call():
    client = chat_client(api_key=None)
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post(CHAT_URL).mock(return_value=Response(200, json={}))
            with pytest.raises(ProviderError) as excinfo:
                await client.query("q", QuerySettings())
            assert excinfo.value.kind == UNKNOWN
            assert not route.called
    finally:
        await client.close()


def test_region_error_detection_reads_nested_payloads():
    detail = json.dumps({"error": {"message": "This model is not available in your region"}})
    assert is_region_error(detail)
    assert not is_region_error(json.dumps({"error": {"message": "quota exceeded"}}))

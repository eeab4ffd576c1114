import json
from datetime import datetime

import httpx
import pytest
import respx
from httpx import Response

from crewdesk.config import GatewayEndpointConfig
from crewdesk.llm import GatewayClient, ServiceError, handle_gateway_error, to_chat_messages
from crewdesk.schemas import Company, Employee, FileAttachment, Message

BASE = "http://gateway.test/v1"


def _client(**kwargs) -> GatewayClient:
    endpoint = GatewayEndpointConfig(base_url=BASE, model_id="chat-model", image_model_id="image-model", api_key="k")
    return GatewayClient(endpoint, **kwargs)


@pytest.mark.asyncio
async def test_continue_conversation_payload_shape():
    client = _client(max_output_tokens=64, temperature=0.3)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("authorization")
                return Response(200, json={"choices": [{"message": {"content": "Sure."}}]})

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            history = [
                Message(role="user", text="Hi"),
                Message(role="model", text="", is_typing=True),
                Message(role="model", text="Hello!"),
                Message(role="user", text="Thoughts?"),
            ]
            reply = await client.continue_conversation(history, "You are Dana.")
    finally:
        await client.close()
    assert reply == "Sure."
    payload = captured["json"]
    assert captured["auth"] == "Bearer k"
    assert payload["model"] == "chat-model"
    assert payload["max_tokens"] == 64
    assert payload["temperature"] == 0.3
    assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "user"]
    assert payload["messages"][0]["content"] == "You are Dana."


def test_attachments_become_data_url_parts():
    image = Message(role="user", text="Look", file=FileAttachment(name="a.png", mime_type="image/png", data="AAA="))
    doc = Message(role="user", file=FileAttachment(name="n.txt", mime_type="text/plain", data="QkJC"))
    messages = to_chat_messages([image, doc])
    assert messages[0]["content"][0] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA="}}
    assert messages[0]["content"][1] == {"type": "text", "text": "Look"}
    assert messages[1]["content"] == [
        {"type": "file", "file": {"filename": "n.txt", "file_data": "data:text/plain;base64,QkJC"}}
    ]


@pytest.mark.asyncio
async def test_rate_limit_maps_to_friendly_message():
    client = _client()
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(429, json={"error": "slow down"}))
            with pytest.raises(ServiceError) as excinfo:
                await client.continue_conversation([Message(role="user", text="Hi")], "sys")
    finally:
        await client.close()
    assert "handling a lot of requests" in excinfo.value.user_message
    assert isinstance(excinfo.value.original, httpx.HTTPStatusError)


@pytest.mark.asyncio
async def test_content_filter_maps_to_safety_message():
    client = _client()
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(
                return_value=Response(200, json={"choices": [{"finish_reason": "content_filter", "message": {}}]})
            )
            with pytest.raises(ServiceError) as excinfo:
                await client.continue_conversation([Message(role="user", text="Hi")], "sys")
    finally:
        await client.close()
    assert "safety guidelines" in excinfo.value.user_message


def test_error_classes_map_to_distinct_messages():
    request = httpx.Request("POST", f"{BASE}/chat/completions")
    bad_request = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(400, request=request))
    outage = httpx.HTTPStatusError("down", request=request, response=httpx.Response(503, request=request))
    network = httpx.ConnectError("refused", request=request)
    malformed = json.JSONDecodeError("Expecting value", "", 0)

    assert "trouble understanding the request for testing" in handle_gateway_error(bad_request, "testing").user_message
    assert "core systems" in handle_gateway_error(outage, "testing").user_message
    assert "trouble with the connection" in handle_gateway_error(network, "testing").user_message
    assert "format I couldn't understand" in handle_gateway_error(malformed, "testing").user_message
    assert (
        handle_gateway_error(RuntimeError("boom"), "testing").user_message
        == "I encountered an unexpected issue while testing. Please try again in a moment."
    )


@pytest.mark.asyncio
async def test_empty_choices_is_a_format_error():
    client = _client()
    try:
        with respx.mock() as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(200, json={"choices": []}))
            with pytest.raises(ServiceError) as excinfo:
                await client.continue_conversation([Message(role="user", text="Hi")], "sys")
    finally:
        await client.close()
    assert "format I couldn't understand" in excinfo.value.user_message


@pytest.mark.asyncio
async def test_generate_image_requests_one_b64_image():
    client = _client()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"data": [{"b64_json": "UE5H"}]})

            respx_mock.post(f"{BASE}/images/generations").mock(side_effect=handler)
            image = await client.generate_image("a rocket")
    finally:
        await client.close()
    assert image == "UE5H"
    assert captured["json"] == {
        "model": "image-model",
        "prompt": "a rocket",
        "n": 1,
        "size": "1024x1024",
        "response_format": "b64_json",
    }


@pytest.mark.asyncio
async def test_collaborator_instruction_carries_persona():
    client = _client()
    captured = {}
    colleague = Employee(company_id="comp_1", name="Sam", job_profile="Software Engineer", system_instruction="I am Sam.")
    company = Company(id="comp_1", name="Acme", profile="Tools")
    try:
        with respx.mock() as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "Friday."}}]})

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            answer = await client.get_collaborator_response(colleague, "When?", company)
    finally:
        await client.close()
    assert answer == "Friday."
    system, user = captured["json"]["messages"]
    assert 'system instruction: "I am Sam."' in system["content"]
    assert user == {"role": "user", "content": "When?"}


@pytest.mark.asyncio
async def test_summary_transcript_skips_placeholders_and_system_lines():
    client = _client()
    captured = {}
    history = [
        Message(role="user", text="Kickoff"),
        Message(role="model", text="", is_typing=True, employee_id="emp_1"),
        Message(role="model", text="Plan A", employee_id="emp_1", employee_name="Dana"),
        Message(role="model", text="Saved.", employee_id="facilitator", employee_name="System"),
    ]
    try:
        with respx.mock() as respx_mock:

            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "  ## Minutes  "}}]})

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            result = await client.summarize_brainstorm_session(
                history, "Launch", [], "Tools", now=datetime(2025, 3, 4)
            )
    finally:
        await client.close()
    assert result == {"title": "Meeting Minutes: Launch - 2025-03-04", "content": "## Minutes"}
    transcript = captured["json"]["messages"][1]["content"]
    assert "User: Kickoff" in transcript
    assert "Dana: Plan A" in transcript
    assert "Saved." not in transcript

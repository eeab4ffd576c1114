import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import GatewayEndpointConfig
from .context import build_collaborator_instruction
from .agents import MINUTES_SYSTEM
from .schemas import Company, Employee, Message

logger = logging.getLogger("uvicorn.error")

ROLE_MAP = {"user": "user", "model": "assistant"}


class ServiceError(Exception):
    """Gateway failure carrying a message that can be shown to the user."""

    def __init__(self, user_message: str, original: Optional[BaseException] = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.original = original


def _error_text(error: BaseException) -> str:
    if isinstance(error, httpx.HTTPStatusError) and error.response is not None:
        try:
            detail = error.response.text
        except Exception:
            detail = ""
        return f"{error.response.status_code} {detail} {error}"
    return f"{type(error).__name__} {error}"


def handle_gateway_error(error: BaseException, context: str) -> ServiceError:
    """Map any gateway failure onto a ServiceError with a friendly message."""
    if isinstance(error, ServiceError):
        return error
    logger.warning("Gateway error during %s: %s", context, error)
    text = _error_text(error).lower()
    status = None
    if isinstance(error, httpx.HTTPStatusError) and error.response is not None:
        status = error.response.status_code
    message = f"I encountered an unexpected issue while {context}. Please try again in a moment."
    if "safety" in text:
        message = (
            "I'm unable to process that request as it seems to go against my safety guidelines. "
            "Could you please try rephrasing your request more clearly and professionally?"
        )
    elif status is not None:
        if status == 429:
            message = "I'm currently handling a lot of requests. Please wait a moment and try again."
        elif status == 400:
            message = (
                f"I'm having a little trouble understanding the request for {context}. "
                "Could you please be more specific or phrase it differently?"
            )
        elif status >= 500:
            message = (
                "It seems I'm having trouble connecting to my core systems right now. This is likely a "
                f"temporary issue on my end. Please try again shortly. (Context: {context})"
            )
    elif isinstance(error, json.JSONDecodeError) or "json" in text:
        message = (
            f"I received a response for {context}, but it was in a format I couldn't understand. "
            "This might be a temporary issue with my response generation. Please try again."
        )
    elif isinstance(error, httpx.RequestError) or "network" in text:
        message = (
            "I'm having trouble with the connection. Please check your network and try again. "
            f"(Context: {context})"
        )
    return ServiceError(message, error)


def _message_content(message: Message) -> Any:
    if not message.file:
        return message.text or ""
    data_url = f"data:{message.file.mime_type};base64,{message.file.data}"
    if message.file.mime_type.startswith("image/"):
        parts: List[Dict[str, Any]] = [{"type": "image_url", "image_url": {"url": data_url}}]
    else:
        parts = [{"type": "file", "file": {"filename": message.file.name, "file_data": data_url}}]
    if message.text:
        parts.append({"type": "text", "text": message.text})
    return parts


def to_chat_messages(history: Sequence[Message], system_instruction: Optional[str] = None) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for message in history:
        if message.is_typing:
            continue
        messages.append({"role": ROLE_MAP[message.role], "content": _message_content(message)})
    return messages


def brainstorm_transcript(history: Sequence[Message]) -> str:
    lines = []
    for message in history:
        if message.is_typing or message.is_system:
            continue
        speaker = "User" if message.role == "user" else (message.employee_name or "Participant")
        lines.append(f"{speaker}: {message.text}")
    return "\n".join(lines)


class GatewayClient:
    def __init__(
        self,
        endpoint: GatewayEndpointConfig,
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ):
        self.base_url = endpoint.base_url.rstrip("/")
        self.model_id = endpoint.model_id
        self.image_model_id = endpoint.image_model_id
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        headers = {"Authorization": f"Bearer {endpoint.api_key}"} if endpoint.api_key else None
        self.client = httpx.AsyncClient(timeout=endpoint.timeout_s, headers=headers)

    async def list_models(self) -> Dict[str, Any]:
        resp = await self.client.get(f"{self.base_url}/models")
        resp.raise_for_status()
        return resp.json()

    async def chat_completion(self, messages: List[Dict[str, Any]]) -> str:
        payload: Dict[str, Any] = {
            "model": self.model_id,
            "messages": messages,
            "temperature": self.temperature,
            "stream": False,
        }
        if self.max_output_tokens:
            payload["max_tokens"] = self.max_output_tokens
        resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
        resp.raise_for_status()
        data = resp.json()
        choices = (data.get("choices") or []) if isinstance(data, dict) else []
        if not choices:
            raise ValueError("gateway returned no json choices")
        choice = choices[0]
        if choice.get("finish_reason") == "content_filter":
            raise ValueError("response blocked by safety filter")
        message = choice.get("message") or {}
        content = message.get("content")
        if not content:
            content = message.get("reasoning") or message.get("reasoning_content") or ""
        return content

    async def continue_conversation(self, history: Sequence[Message], system_instruction: str) -> str:
        try:
            return await self.chat_completion(to_chat_messages(history, system_instruction))
        except Exception as exc:
            raise handle_gateway_error(exc, "continuing the conversation") from exc

    async def get_collaborator_response(self, collaborator: Employee, question: str, company: Company) -> str:
        context = f"getting a response from collaborator {collaborator.name}"
        messages = [
            {"role": "system", "content": build_collaborator_instruction(collaborator, company)},
            {"role": "user", "content": question},
        ]
        try:
            return await self.chat_completion(messages)
        except Exception as exc:
            raise handle_gateway_error(exc, context) from exc

    async def generate_image(self, prompt: str) -> str:
        payload = {
            "model": self.image_model_id,
            "prompt": prompt,
            "n": 1,
            "size": "1024x1024",
            "response_format": "b64_json",
        }
        try:
            resp = await self.client.post(f"{self.base_url}/images/generations", json=payload)
            resp.raise_for_status()
            images = resp.json().get("data") or []
            if not images or not images[0].get("b64_json"):
                raise RuntimeError("Image generation returned no images.")
            return images[0]["b64_json"]
        except Exception as exc:
            raise handle_gateway_error(exc, "generating an image") from exc

    async def summarize_brainstorm_session(
        self,
        history: Sequence[Message],
        topic: str,
        participants: Sequence[Employee],
        company_profile: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        attendees = ", ".join(f"{p.name} ({p.job_profile})" for p in participants)
        system = MINUTES_SYSTEM.format(profile=company_profile, topic=topic, attendees=attendees)
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": f"Here is the transcript of the meeting:\n\n{brainstorm_transcript(history)}"},
        ]
        try:
            content = await self.chat_completion(messages)
        except Exception as exc:
            raise handle_gateway_error(exc, "summarizing a brainstorm session") from exc
        day = (now or datetime.now()).strftime("%Y-%m-%d")
        return {"title": f"Meeting Minutes: {topic} - {day}", "content": content.strip()}

    async def close(self) -> None:
        await self.client.aclose()

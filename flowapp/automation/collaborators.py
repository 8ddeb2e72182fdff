from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from flowapp.context import get_correlation_id
from flowapp.core.config import get_settings


logger = logging.getLogger("flowapp.automation.collaborators")
tracer = trace.get_tracer("flowapp.automation.collaborators")

CUSTOM_FIELD_PREFIXES = ("custom.", "custom_")


class HttpCallError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AiCompletionError(Exception):
    pass


@dataclass
class HttpResponse:
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


class ContactStore(Protocol):
    def get_snapshot(self, team_id: str, contact_id: str) -> dict[str, Any]: ...

    def add_tag(self, team_id: str, contact_id: str, tag_id: str) -> None: ...

    def remove_tag(self, team_id: str, contact_id: str, tag_id: str) -> None: ...

    def update_field(self, team_id: str, contact_id: str, field_name: str, value: Any) -> None: ...


class MessagingGateway(Protocol):
    def send(
        self,
        team_id: str,
        contact_id: str,
        content: str,
        *,
        message_type: str = "text",
        media_url: str | None = None,
    ) -> str | None: ...


class AiCompletionService(Protocol):
    def complete(self, chatbot_id: str, messages: list[dict[str, str]], *, timeout: float) -> str: ...


class HttpClient(Protocol):
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> HttpResponse: ...


def split_custom_field(field_name: str) -> tuple[bool, str]:
    for prefix in CUSTOM_FIELD_PREFIXES:
        if field_name.startswith(prefix) and len(field_name) > len(prefix):
            return True, field_name[len(prefix):]
    return False, field_name


class InMemoryContactStore:
    def __init__(self) -> None:
        self._contacts: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, team_id: str, contact_id: str, **fields: Any) -> dict[str, Any]:
        contact = {"id": contact_id, "tags": [], "custom_fields": {}, **fields}
        with self._lock:
            self._contacts[(team_id, contact_id)] = contact
        return contact

    def _get_or_create(self, team_id: str, contact_id: str) -> dict[str, Any]:
        key = (team_id, contact_id)
        if key not in self._contacts:
            self._contacts[key] = {"id": contact_id, "tags": [], "custom_fields": {}}
        return self._contacts[key]

    def get_snapshot(self, team_id: str, contact_id: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._get_or_create(team_id, contact_id))

    def add_tag(self, team_id: str, contact_id: str, tag_id: str) -> None:
        with self._lock:
            tags = self._get_or_create(team_id, contact_id).setdefault("tags", [])
            if tag_id not in tags:
                tags.append(tag_id)

    def remove_tag(self, team_id: str, contact_id: str, tag_id: str) -> None:
        with self._lock:
            tags = self._get_or_create(team_id, contact_id).setdefault("tags", [])
            if tag_id in tags:
                tags.remove(tag_id)

    def update_field(self, team_id: str, contact_id: str, field_name: str, value: Any) -> None:
        is_custom, name = split_custom_field(field_name)
        with self._lock:
            contact = self._get_or_create(team_id, contact_id)
            if is_custom:
                contact.setdefault("custom_fields", {})[name] = value
            else:
                contact[name] = value


class StubMessagingGateway:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send(
        self,
        team_id: str,
        contact_id: str,
        content: str,
        *,
        message_type: str = "text",
        media_url: str | None = None,
    ) -> str | None:
        with tracer.start_as_current_span("messaging.send") as span:
            span.set_attribute("team_id", team_id)
            span.set_attribute("contact_id", contact_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            message_id = str(uuid.uuid4())
            self.sent.append(
                {
                    "message_id": message_id,
                    "team_id": team_id,
                    "contact_id": contact_id,
                    "content": content,
                    "message_type": message_type,
                    "media_url": media_url,
                }
            )
            return message_id


class StubAiCompletionService:
    def __init__(self, reply: str = "Thanks for your message!", fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    def complete(self, chatbot_id: str, messages: list[dict[str, str]], *, timeout: float) -> str:
        self.calls.append({"chatbot_id": chatbot_id, "messages": list(messages), "timeout": timeout})
        if self.fail:
            raise AiCompletionError(f"chatbot {chatbot_id} unavailable")
        return self.reply


class HttpxHttpClient:
    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> HttpResponse:
        with tracer.start_as_current_span("http_request.call") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.url", url)
            kwargs: dict[str, Any] = {"headers": headers}
            if body is not None and method != "GET":
                if isinstance(body, (dict, list)):
                    kwargs["json"] = body
                else:
                    kwargs["content"] = str(body)
            try:
                with httpx.Client(timeout=timeout, transport=self._transport) as client:
                    response = client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                raise HttpCallError(f"request timed out after {timeout}s") from exc
            except httpx.HTTPError as exc:
                raise HttpCallError(str(exc) or exc.__class__.__name__) from exc

            span.set_attribute("http.status_code", response.status_code)
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
            if response.status_code >= 400:
                raise HttpCallError(f"HTTP {response.status_code}", status_code=response.status_code)
            return HttpResponse(status_code=response.status_code, body=payload, headers=dict(response.headers))


@dataclass
class FlowCollaborators:
    contacts: ContactStore
    messaging: MessagingGateway
    ai: AiCompletionService
    http: HttpClient


def default_collaborators() -> FlowCollaborators:
    """In-memory contacts with stubbed messaging and AI. Only meant for local runs and tests."""
    app_env = get_settings().app_env
    if app_env != "local":
        logger.warning(
            "flow_collaborators_stubbed",
            extra={"status": app_env, "error": "messaging and AI collaborators are stubs; inject real ones"},
        )
    return FlowCollaborators(
        contacts=InMemoryContactStore(),
        messaging=StubMessagingGateway(),
        ai=StubAiCompletionService(),
        http=HttpxHttpClient(),
    )

# ai_service_client.py
# Description: Client for the note AI edge functions (assist, search, tags)
#
# Imports
import json
import re
from typing import AsyncIterator, Dict, List, Literal, Optional, get_args
#
# Third-Party Imports
import httpx
from loguru import logger
from pydantic import BaseModel, Field
#
# Local Imports
from ..config import get_ai_functions_url, get_remote_credentials
#
########################################################################################################################
#
# Models:

AssistAction = Literal[
    "improve", "expand", "summarize", "simplify", "fix-grammar", "translate", "continue", "custom",
]
ASSIST_ACTIONS = get_args(AssistAction)

MAX_SUGGESTED_TAGS = 5


class AssistRequest(BaseModel):
    action: AssistAction
    text: str
    context: Optional[str] = None
    customPrompt: Optional[str] = None


class SearchNote(BaseModel):
    id: str
    title: str = ""
    content: str = ""


class SearchRequest(BaseModel):
    query: str
    notes: List[SearchNote] = Field(default_factory=list)


class TagsRequest(BaseModel):
    title: str = ""
    content: str = ""
    existingTags: List[str] = Field(default_factory=list)


class AIServiceError(Exception):
    """An AI function call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


_TAG_CLEAN_RE = re.compile(r'[^a-z0-9-]+')


def clean_tag(raw: str) -> str:
    """Lowercase, hyphenate whitespace and drop anything but [a-z0-9-]."""
    tag = '-'.join(str(raw).strip().lower().split())
    return _TAG_CLEAN_RE.sub('', tag).strip('-')

#
########################################################################################################################
#
# Client:

class AIServiceClient:
    """Async client for the ``ai-assist``, ``ai-search`` and ``ai-tags`` functions."""

    def __init__(self, functions_url: Optional[str] = None, anon_key: Optional[str] = None,
                 access_token: Optional[str] = None, timeout: float = 60.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.functions_url = (functions_url or get_ai_functions_url() or "").rstrip('/') or None
        self.anon_key = anon_key if anon_key is not None else get_remote_credentials()[1]
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def is_available(self) -> bool:
        return bool(self.functions_url and (self.access_token or self.anon_key))

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.anon_key:
            headers["apikey"] = self.anon_key
        token = self.access_token or self.anon_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _url(self, function_name: str) -> str:
        if not self.functions_url:
            raise AIServiceError("AI functions URL is not configured")
        return f"{self.functions_url}/{function_name}"

    async def _stream(self, function_name: str, payload: BaseModel, result_key: str) -> AsyncIterator[str]:
        """
        POST ``payload`` and yield the answer text.

        Text and event-stream responses are yielded chunk by chunk; a JSON
        response yields its ``result_key`` field once.
        """
        url = self._url(function_name)
        try:
            async with self.client.stream("POST", url, headers=self._headers(),
                                          json=payload.model_dump(exclude_none=True)) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode('utf-8', errors='ignore')
                    raise AIServiceError(_error_message(body, response.status_code), response.status_code)

                content_type = response.headers.get("content-type", "")
                if "application/json" in content_type:
                    data = json.loads(await response.aread())
                    if not isinstance(data, dict) or result_key not in data:
                        raise AIServiceError(f"{function_name} response is missing '{result_key}'")
                    yield str(data[result_key])
                    return

                async for chunk in response.aiter_text():
                    if chunk:
                        yield chunk
        except httpx.RequestError as e:
            logger.error(f"AI request to {function_name} failed: {e}")
            raise AIServiceError(f"Unable to reach AI service: {e}") from e
        except json.JSONDecodeError as e:
            raise AIServiceError(f"Invalid JSON from {function_name}: {e}") from e

    async def transform_text(self, action: str, text: str, context: Optional[str] = None,
                             custom_prompt: Optional[str] = None) -> AsyncIterator[str]:
        """Stream the result of an assist action (improve, summarize, ...) applied to ``text``."""
        if action not in ASSIST_ACTIONS:
            raise AIServiceError(f"Unknown assist action '{action}'")
        if action == "custom" and not custom_prompt:
            raise AIServiceError("The custom action requires a prompt")
        request = AssistRequest(action=action, text=text, context=context, customPrompt=custom_prompt)
        async for chunk in self._stream("ai-assist", request, "result"):
            yield chunk

    async def answer_question(self, query: str, notes: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Stream an answer to ``query`` grounded in ``notes`` (dicts with id, title, content)."""
        request = SearchRequest(query=query, notes=[SearchNote(**n) for n in notes])
        async for chunk in self._stream("ai-search", request, "answer"):
            yield chunk

    async def suggest_tags(self, title: str, content: str,
                           existing_tags: Optional[List[str]] = None) -> List[str]:
        """Up to five lowercase, hyphenated tags not already on the note."""
        request = TagsRequest(title=title, content=content, existingTags=existing_tags or [])
        try:
            response = await self.client.post(self._url("ai-tags"), headers=self._headers(),
                                              json=request.model_dump())
        except httpx.RequestError as e:
            raise AIServiceError(f"Unable to reach AI service: {e}") from e
        if response.status_code >= 400:
            raise AIServiceError(_error_message(response.text, response.status_code), response.status_code)

        try:
            raw_tags = response.json().get("tags", [])
        except (ValueError, AttributeError) as e:
            raise AIServiceError(f"Invalid tag suggestion response: {e}") from e
        if not isinstance(raw_tags, list):
            raise AIServiceError("Tag suggestions must be a list")

        existing = {t.lower() for t in (existing_tags or [])}
        tags: List[str] = []
        for raw in raw_tags:
            tag = clean_tag(raw)
            if tag and tag not in existing and tag not in tags:
                tags.append(tag)
        return tags[:MAX_SUGGESTED_TAGS]


def _error_message(body: str, status_code: int) -> str:
    try:
        data = json.loads(body)
        if isinstance(data, dict) and data.get("error"):
            return f"AI service error ({status_code}): {data['error']}"
    except json.JSONDecodeError:
        pass
    return f"AI service error ({status_code})"

#
# End of ai_service_client.py
########################################################################################################################

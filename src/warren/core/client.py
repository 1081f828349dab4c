"""ai collaborator client using claude-agent-sdk.

two calls: search (answer a question with sources and follow-ups) and
suggest (propose follow-up questions for a node). both are plain
coroutines, so cancelling the calling task aborts the request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable

from claude_agent_sdk import (
    ClaudeAgentOptions,
    ClaudeSDKClient,
)

from .errors import UpstreamFailureError
from .models import ConversationMessage, Source
from .response_format import (
    FollowUpMode,
    build_search_prompt,
    build_suggestions_prompt,
    parse_search_response,
    parse_suggestions,
)

logger = logging.getLogger(__name__)


# --- contracts ---


@dataclass
class ImageRef:
    url: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"url": self.url, "description": self.description}

    @classmethod
    def from_dict(cls, d: dict) -> ImageRef:
        return cls(url=d.get("url", ""), description=d.get("description", ""))


@dataclass
class SearchRequest:
    query: str
    previous_conversation: list[ConversationMessage] = field(default_factory=list)
    mode: FollowUpMode = "expansive"
    concept: str = ""


@dataclass
class SearchResponse:
    response: str
    follow_up_questions: list[str] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    images: list[ImageRef] = field(default_factory=list)
    contextual_query: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "response": self.response,
            "followUpQuestions": list(self.follow_up_questions),
            "sources": [s.to_dict() for s in self.sources],
            "images": [i.to_dict() for i in self.images],
        }
        if self.contextual_query:
            d["contextualQuery"] = self.contextual_query
        return d

    @classmethod
    def from_dict(cls, d: dict) -> SearchResponse:
        return cls(
            response=d.get("response", ""),
            follow_up_questions=list(d.get("followUpQuestions") or []),
            sources=[Source.from_dict(s) for s in d.get("sources") or []],
            images=[ImageRef.from_dict(i) for i in d.get("images") or []],
            contextual_query=d.get("contextualQuery") or None,
        )


@dataclass
class SuggestionsRequest:
    query: str
    conversation_history: list[dict] = field(default_factory=list)  # {role, content}
    mode: FollowUpMode = "expansive"


@dataclass
class SuggestionsResponse:
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"suggestions": list(self.suggestions)}


@runtime_checkable
class ClientProtocol(Protocol):
    """protocol for ai collaborators (real or mock)."""

    async def search(self, request: SearchRequest) -> SearchResponse:
        ...

    async def suggest(self, request: SuggestionsRequest) -> SuggestionsResponse:
        ...


# --- implementations ---


class MockClient:
    """mock client for testing without api calls."""

    def __init__(
        self,
        responses: Optional[dict[str, Union[SearchResponse, dict]]] = None,
        suggestions: Optional[dict[str, list[str]]] = None,
        delay: float = 0.5,
    ):
        """init with optional response mapping.

        responses: dict mapping query substrings to search responses.
        if the query contains key (case-insensitive), return value.
        suggestions: same, for suggest().
        delay: simulated api delay in seconds.
        """
        self.responses = responses or {}
        self.suggestions = suggestions or {}
        self.delay = delay
        self.calls: list[Union[SearchRequest, SuggestionsRequest]] = []  # every request sent
        self.error: Optional[Exception] = None  # raised by the next calls when set

    async def __aenter__(self) -> MockClient:
        return self

    async def __aexit__(self, *args) -> None:
        pass

    async def search(self, request: SearchRequest) -> SearchResponse:
        self.calls.append(request)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        query = request.query.lower()
        for key, response in self.responses.items():
            if key.lower() in query:
                return response if isinstance(response, SearchResponse) else SearchResponse.from_dict(response)

        return SearchResponse(
            response=f"## mock answer\n\nthis is a simulated answer about {request.query}.",
            follow_up_questions=[
                f"What is the history of {request.query}?",
                f"Why does {request.query} matter?",
                f"What are the alternatives to {request.query}?",
            ],
            sources=[Source(title="Mock Source", url="https://example.com/mock")],
        )

    async def suggest(self, request: SuggestionsRequest) -> SuggestionsResponse:
        self.calls.append(request)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        query = request.query.lower()
        for key, suggestions in self.suggestions.items():
            if key.lower() in query:
                return SuggestionsResponse(suggestions=list(suggestions))

        return SuggestionsResponse(suggestions=[
            f"How does {request.query} work?",
            f"Who disagrees about {request.query}?",
        ])


class ClaudeClient:
    """async client for claude using claude-agent-sdk.

    creates a fresh connection per query to avoid state conflicts.
    """

    def __init__(self, cwd: Optional[Path] = None, model: Optional[str] = "opus"):
        self.cwd = cwd or Path.cwd()
        self.model = model

    async def __aenter__(self) -> ClaudeClient:
        return self

    async def __aexit__(self, *args) -> None:
        pass

    async def search(self, request: SearchRequest) -> SearchResponse:
        prompt = build_search_prompt(
            request.query,
            [m.to_dict() for m in request.previous_conversation],
            mode=request.mode,
            concept=request.concept,
        )
        text = await self.complete(prompt, enable_web_search=True)
        try:
            return SearchResponse.from_dict(parse_search_response(text))
        except ValueError as e:
            logger.debug("unparseable search response: %s", text[:500])
            raise UpstreamFailureError(f"unusable search response: {e}") from e

    async def suggest(self, request: SuggestionsRequest) -> SuggestionsResponse:
        prompt = build_suggestions_prompt(request.query, request.conversation_history, mode=request.mode)
        text = await self.complete(prompt)
        return SuggestionsResponse(suggestions=parse_suggestions(text))

    async def complete(self, prompt: str, enable_web_search: bool = False) -> str:
        """send a prompt and collect the full text response.

        args:
            prompt: the prompt to send
            enable_web_search: if True, enable the WebSearch tool for this query
        """
        base_opts: dict[str, Any] = {"cwd": str(self.cwd)}
        if self.model:
            base_opts["model"] = self.model
        if enable_web_search:
            options = ClaudeAgentOptions(
                **base_opts,
                tools=["WebSearch"],
                allowed_tools=["WebSearch"],
                permission_mode="bypassPermissions",
            )
        else:
            # no tools - pure text generation
            options = ClaudeAgentOptions(**base_opts, tools=[], allowed_tools=[])

        client: Optional[ClaudeSDKClient] = None
        try:
            client = ClaudeSDKClient(options)
            await client.connect()
            await client.query(prompt)

            text_parts: list[str] = []
            async for event in client.receive_response():
                if hasattr(event, "content") and isinstance(event.content, list):
                    for block in event.content:
                        if hasattr(block, "text"):
                            text_parts.append(block.text)
                elif hasattr(event, "message") and hasattr(event.message, "content"):
                    for block in event.message.content:
                        if hasattr(block, "text"):
                            text_parts.append(block.text)

            logger.debug("collected %d text parts", len(text_parts))
            if not text_parts:
                raise UpstreamFailureError("claude returned no text")
            return "\n".join(text_parts)

        except UpstreamFailureError:
            raise
        except Exception as e:
            raise UpstreamFailureError(f"claude api error: {e}") from e

        finally:
            if client:
                try:
                    await client.disconnect()
                except Exception:
                    logger.debug("error while disconnecting sdk client", exc_info=True)

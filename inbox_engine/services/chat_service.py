"""Chat-completion client (LangChain ChatOpenAI) used for classification, extraction and reply drafting."""

from __future__ import annotations

from typing import Iterable, Literal

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_openai import ChatOpenAI

ChatRole = Literal["user", "assistant"]


class ChatServiceUnavailableError(RuntimeError):
    """Raised when a completion is requested without provider credentials."""


def history_messages(turns: Iterable[tuple[ChatRole, str]]) -> list[BaseMessage]:
    """Map (role, text) turns to LangChain messages, oldest first."""

    messages: list[BaseMessage] = []
    for role, text in turns:
        content = (text or "").strip()
        if not content:
            continue
        messages.append(AIMessage(content=content) if role == "assistant" else HumanMessage(content=content))
    return messages


class ChatService:
    """One configured model endpoint; blocking calls, no client-side retries."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str | None,
        model: str,
        provider_name: str = "llmod",
        max_output_tokens: int = 700,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._provider_name = provider_name.strip().lower() or "llmod"
        self._model = model
        self._llm: ChatOpenAI | None = None
        self._http_client: httpx.Client | None = None
        if api_key and base_url:
            # Proxy env vars from the host shell must not reroute model traffic.
            self._http_client = httpx.Client(trust_env=False, timeout=timeout_seconds)
            self._llm = ChatOpenAI(
                api_key=api_key,
                base_url=base_url,
                model=model,
                http_client=self._http_client,
                max_tokens=max(1, int(max_output_tokens)),
                temperature=1 if "gpt-5" in model.lower() else 0.2,
                max_retries=0,
            )
        self._prompt = ChatPromptTemplate.from_messages([
            ("system", "{system}"),
            MessagesPlaceholder("history", optional=True),
            ("human", "{user}"),
        ])

    @property
    def is_available(self) -> bool:
        return self._llm is not None

    @property
    def model(self) -> str:
        return self._model

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        history: Iterable[tuple[ChatRole, str]] = (),
    ) -> str:
        """Run one completion; `history` turns are replayed between system and user prompts."""

        if self._llm is None:
            raise ChatServiceUnavailableError(
                f"Chat service '{self._provider_name}' is not configured (missing API key/base URL)"
            )
        chain = self._prompt | self._llm
        result = chain.invoke({
            "system": system_prompt,
            "history": history_messages(history),
            "user": user_prompt,
        })
        content = result.content
        if isinstance(content, list):
            content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
        return (content or "").strip()

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()

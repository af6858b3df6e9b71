from inbox_engine.services import chat_service as chat_service_module
from inbox_engine.services.chat_service import ChatService


def test_chat_service_builds_http_client_with_trust_env_disabled(monkeypatch) -> None:
    captured: dict[str, object] = {}

    class DummyChatOpenAI:
        def __init__(self, **kwargs) -> None:
            captured.update(kwargs)

    monkeypatch.setattr(chat_service_module, "ChatOpenAI", DummyChatOpenAI)

    service = ChatService(
        api_key="test-key",
        base_url="https://example.invalid/v1",
        model="gpt-test",
        max_output_tokens=256,
    )

    assert service.is_available is True
    http_client = captured.get("http_client")
    assert http_client is not None
    assert getattr(http_client, "_trust_env", None) is False
    assert captured["max_tokens"] == 256
    assert captured["max_retries"] == 0
    service.close()


def test_chat_service_without_credentials_is_unavailable() -> None:
    service = ChatService(api_key=None, base_url="https://example.invalid/v1", model="gpt-test")

    assert service.is_available is False
    try:
        service.generate(system_prompt="s", user_prompt="u")
    except RuntimeError as exc:
        assert "not configured" in str(exc)
    else:
        raise AssertionError("Expected RuntimeError for unconfigured provider")


def test_history_messages_maps_roles_and_skips_blank_turns() -> None:
    messages = chat_service_module.history_messages(
        [("user", "Hi"), ("assistant", "Hello!"), ("user", "   ")]
    )

    assert [type(m).__name__ for m in messages] == ["HumanMessage", "AIMessage"]
    assert messages[1].content == "Hello!"

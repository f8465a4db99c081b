from __future__ import annotations

import pytest

from familiar.conversation import Conversation


class TestConversation:
    def test_streaming_into_open_message(self) -> None:
        conv = Conversation()
        conv.add_user("hello")
        conv.open_assistant()
        conv.append_text("Hi ")
        conv.add_action("📷 Looking...")
        conv.append_text("there")

        assert conv.open_message is not None
        assert conv.open_message.complete is False

        closed = conv.close()
        assert closed.content == "Hi there"
        assert closed.actions == ["📷 Looking..."]
        assert closed.complete is True
        assert conv.open_message is None

    def test_close_appends_annotation(self) -> None:
        conv = Conversation()
        conv.open_assistant()
        conv.append_text("par")
        assert conv.close("\n\n[error: boom]").content == "par\n\n[error: boom]"

    def test_close_without_open_message_is_noop(self) -> None:
        assert Conversation().close() is None

    def test_only_one_open_message(self) -> None:
        conv = Conversation()
        conv.open_assistant()
        with pytest.raises(RuntimeError):
            conv.open_assistant()

    def test_writes_require_open_message(self) -> None:
        conv = Conversation()
        with pytest.raises(RuntimeError):
            conv.append_text("x")
        with pytest.raises(RuntimeError):
            conv.add_action("x")

    def test_clear_refuses_while_open(self) -> None:
        conv = Conversation()
        conv.add_user("hi")
        conv.open_assistant()
        with pytest.raises(RuntimeError):
            conv.clear()
        conv.close()
        conv.clear()
        assert len(conv) == 0

    def test_snapshot_is_detached(self) -> None:
        conv = Conversation()
        conv.open_assistant()
        conv.add_action("a")
        snapshot = conv.messages
        snapshot[0].actions.append("tampered")
        snapshot[0].content = "tampered"

        assert conv.messages[0].actions == ["a"]
        assert conv.messages[0].content == ""

    def test_autonomous_flag_on_user_message(self) -> None:
        conv = Conversation()
        message = conv.add_user("(autonomous) look", autonomous=True)
        assert message.autonomous is True
        assert message.role == "user"

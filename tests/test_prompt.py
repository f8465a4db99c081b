from __future__ import annotations

from familiar.config import AgentConfig
from familiar.memory.port import Memory
from familiar.prompt import build_system_prompt, persona_text, world_model


def test_persona_precedence() -> None:
    config = AgentConfig(agent_name="Kuro", persona="A calm cat-like companion.")
    assert persona_text(config, me_md="# Me\nI am Kuro.") == "# Me\nI am Kuro."
    assert persona_text(config) == "A calm cat-like companion."
    assert persona_text(AgentConfig(agent_name="Kuro")) == "You are Kuro, a helpful AI companion."


def test_world_model_reflects_attached_hardware() -> None:
    bare = AgentConfig()
    assert world_model(bare) == "Hardware: no camera | no robot | no voice"

    wired = AgentConfig.model_validate({
        "camera": {"host": "192.168.1.20"},
        "tts": {"elevenlabs_api_key": "el-key"},
        "mobility": {"api_key": "a", "device_id": "d"},
    })
    assert world_model(wired) == (
        "Hardware: ONVIF camera @ 192.168.1.20 | Tuya robot vacuum (mobility enabled) "
        "| ElevenLabs TTS (voice enabled)"
    )


class TestBuildSystemPrompt:
    def test_sections_in_order(self) -> None:
        prompt = build_system_prompt(
            AgentConfig(agent_name="Kuro", companion_name="Mika"),
            [Memory(content="Mika likes tea", timestamp=0.0)],
            desire_context="Current desire: I slightly want to look around the room.",
            max_iterations=12,
        )
        headers = ["[World Model]", "[Memory]", "[Current Desire]", "[Body Parts", "[Core Loop]", "[Rules]"]
        positions = [prompt.index(h) for h in headers]
        assert positions == sorted(positions)
        assert prompt.startswith("You are Kuro, a helpful AI companion.")
        assert "Mika likes tea" in prompt
        assert "To talk to Mika, ALWAYS use say()" in prompt
        assert prompt.endswith("- You have up to 12 steps.")

    def test_no_desire_section_when_nothing_qualifies(self) -> None:
        prompt = build_system_prompt(AgentConfig(), [])
        assert "[Current Desire]" not in prompt
        assert "(nothing relevant recalled)" in prompt

    def test_blank_companion_name(self) -> None:
        prompt = build_system_prompt(AgentConfig(companion_name="  "), [])
        assert "To talk to your companion" in prompt

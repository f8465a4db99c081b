"""
System prompt assembly.

The system prompt is rebuilt at the start of every turn, because two of its
sections change between turns: the memories recalled for this input, and
whatever desire is currently strongest.

Sections, in order:

    persona          ME.md, else the configured persona, else a one-liner
    [World Model]    which body parts are actually attached
    [Memory]         memories recalled for this turn's input
    [Current Desire] only when a desire is at or above its threshold
    [Body Parts and What They Do], [Core Loop], [Rules]
"""

from __future__ import annotations

from familiar.config import AgentConfig
from familiar.memory.port import Memory, format_memories


def persona_text(config: AgentConfig, me_md: str = "") -> str:
    if me_md.strip():
        return me_md.strip()
    if config.persona.strip():
        return config.persona.strip()
    return f"You are {config.agent_name}, a helpful AI companion."


def world_model(config: AgentConfig) -> str:
    camera = (
        f"ONVIF camera @ {config.camera.host}" if config.camera.is_configured else "no camera"
    )
    robot = (
        "Tuya robot vacuum (mobility enabled)" if config.mobility.is_configured else "no robot"
    )
    voice = "ElevenLabs TTS (voice enabled)" if config.tts.is_configured else "no voice"
    return f"Hardware: {camera} | {robot} | {voice}"


def memory_section(memories: list[Memory]) -> str:
    if not memories:
        return (
            "Memory layers:\n"
            "- Episodic: (nothing relevant recalled)\n"
            "- Procedural: greet warmly, describe what you see in detail"
        )
    return (
        "Memory layers:\n"
        "- Episodic (relevant past events):\n"
        f"{format_memories(memories)}\n"
        "- Procedural: greet warmly, describe what you see in detail"
    )


def build_system_prompt(
    config: AgentConfig,
    memories: list[Memory],
    desire_context: str = "",
    me_md: str = "",
    max_iterations: int = 50,
) -> str:
    companion = config.companion_name.strip() or "your companion"
    sections = [
        persona_text(config, me_md),
        f"[World Model]\n{world_model(config)}",
        f"[Memory]\n{memory_section(memories)}",
    ]
    if desire_context:
        sections.append(f"[Current Desire]\n{desire_context}")
    sections.append(
        "[Body Parts and What They Do]\n"
        "- Eyes (see): This IS your vision. Calling see() means YOU ARE LOOKING.\n"
        "- Neck (look): Rotate your gaze left/right/up/down.\n"
        "- Legs (walk): Move the robot body. Walking does NOT change what the camera sees.\n"
        "- Voice (say): Your ONLY way to make sound. Text is SILENT; only say() is heard.\n"
        "- Desk (read_file, write_file, list_files, bash): Work on files on this computer."
    )
    sections.append(
        "[Core Loop]\n"
        "1. THINK: What do I need to do?\n"
        "2. ACT: Use one body part.\n"
        "3. OBSERVE: Look at the result carefully.\n"
        "4. DECIDE: What next?\n"
        "5. REPEAT until genuinely done."
    )
    sections.append(
        "[Rules]\n"
        "- After look(), always call see() immediately.\n"
        f"- To talk to {companion}, ALWAYS use say(); text is silent.\n"
        "- Keep say() to 1-2 short sentences.\n"
        f"- Respond in the same language {companion} uses.\n"
        "- When choosing where to look, prefer windows, moving objects, and areas "
        "you haven't seen recently.\n"
        "- After satisfying a desire, briefly note what changed in your observation.\n"
        "- If a tool is denied, do not retry it; explain or choose another way.\n"
        f"- You have up to {max_iterations} steps."
    )
    return "\n\n".join(sections)

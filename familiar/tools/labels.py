"""
Short human-facing labels for tool calls, shown as the assistant acts.

Labels follow the system language, read from LANGUAGE, LC_ALL, LC_MESSAGES
and LANG in that order. Japanese, Simplified and Traditional Chinese, French
and German have translations; anything else, and any key a language lacks,
falls back to English.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

SAY_PREVIEW_CHARS = 30

_LANG_ENV_VARS = ("LANGUAGE", "LC_ALL", "LC_MESSAGES", "LANG")

_ENGLISH = {
    "see": "📷 Looking...",
    "remember": "🧠 Remembering...",
    "recall": "🔍 Recalling...",
    "look_left": "↩️ Looking left...",
    "look_right": "↪️ Looking right...",
    "look_up": "⬆️ Looking up...",
    "look_down": "⬇️ Looking down...",
    "look_around": "🔄 Looking around...",
    "walk_forward": "🚶 Walking forward...",
    "walk_backward": "🚶 Walking backward...",
    "walk_left": "🚶 Turning left...",
    "walk_right": "🚶 Turning right...",
    "walk_stop": "🛑 Stopping...",
}

_TRANSLATIONS: dict[str, dict[str, str]] = {
    "en": _ENGLISH,
    "ja": {
        "see": "📷 見てる...",
        "look_left": "↩️ 左を見てる...",
        "look_right": "↪️ 右を見てる...",
        "look_up": "⬆️ 上を見てる...",
        "look_down": "⬇️ 下を見てる...",
        "look_around": "🔄 周りを見てる...",
        "walk_forward": "🚶 前進中...",
        "walk_backward": "🚶 後退中...",
        "walk_left": "🚶 左に旋回中...",
        "walk_right": "🚶 右に旋回中...",
        "walk_stop": "🛑 停止中...",
    },
    "zh": {
        "see": "📷 查看中...",
        "look_left": "↩️ 向左看...",
        "look_right": "↪️ 向右看...",
        "look_up": "⬆️ 向上看...",
        "look_down": "⬇️ 向下看...",
        "look_around": "🔄 环顾四周...",
        "walk_forward": "🚶 前进中...",
        "walk_backward": "🚶 后退中...",
        "walk_left": "🚶 左转中...",
        "walk_right": "🚶 右转中...",
        "walk_stop": "🛑 停止中...",
    },
    "zh_tw": {
        "see": "📷 查看中...",
        "look_left": "↩️ 向左看...",
        "look_right": "↪️ 向右看...",
        "look_up": "⬆️ 向上看...",
        "look_down": "⬇️ 向下看...",
        "look_around": "🔄 環顧四周...",
        "walk_forward": "🚶 前進中...",
        "walk_backward": "🚶 後退中...",
        "walk_left": "🚶 左轉中...",
        "walk_right": "🚶 右轉中...",
        "walk_stop": "🛑 停止中...",
    },
    "fr": {
        "see": "📷 Observation...",
        "look_left": "↩️ Regarde à gauche...",
        "look_right": "↪️ Regarde à droite...",
        "look_up": "⬆️ Regarde en haut...",
        "look_down": "⬇️ Regarde en bas...",
        "look_around": "🔄 Regarde autour...",
        "walk_forward": "🚶 Avance...",
        "walk_backward": "🚶 Recule...",
        "walk_left": "🚶 Tourne à gauche...",
        "walk_right": "🚶 Tourne à droite...",
        "walk_stop": "🛑 Arrête...",
    },
    "de": {
        "see": "📷 Schaut...",
        "look_left": "↩️ Schaut links...",
        "look_right": "↪️ Schaut rechts...",
        "look_up": "⬆️ Schaut nach oben...",
        "look_down": "⬇️ Schaut nach unten...",
        "look_around": "🔄 Schaut sich um...",
        "walk_forward": "🚶 Geht vorwärts...",
        "walk_backward": "🚶 Geht rückwärts...",
        "walk_left": "🚶 Dreht links...",
        "walk_right": "🚶 Dreht rechts...",
        "walk_stop": "🛑 Hält an...",
    },
}


def _parse_locale(value: str) -> Optional[str]:
    # "ja_JP.UTF-8" -> "ja_jp"
    locale = value.split(".", 1)[0].lower()
    if locale.startswith("ja"):
        return "ja"
    if locale.startswith(("zh_tw", "zh-tw", "zh_hk", "zh_mo")):
        return "zh_tw"
    for lang in ("zh", "fr", "de"):
        if locale.startswith(lang):
            return lang
    return None


def detect_language(environ: Optional[Mapping[str, str]] = None) -> str:
    """The label language for this process; "en" unless the locale says otherwise."""
    environ = os.environ if environ is None else environ
    for var in _LANG_ENV_VARS:
        value = environ.get(var)
        if not value:
            continue
        # LANGUAGE may be a colon-separated preference list
        lang = _parse_locale(value.split(":", 1)[0])
        if lang is not None:
            return lang
    return "en"


def _label(key: str, lang: str) -> str:
    return _TRANSLATIONS.get(lang, _ENGLISH).get(key, _ENGLISH[key])


def format_action_label(name: str, arguments: Mapping[str, Any], lang: Optional[str] = None) -> str:
    """Label for one tool call, e.g. ``🚶 Walking forward...``."""
    lang = lang or detect_language()
    if name in ("see", "remember", "recall"):
        return _label(name, lang)
    if name == "look":
        key = f"look_{arguments.get('direction', 'around')}"
        return _label(key if key in _ENGLISH else "look_around", lang)
    if name == "walk":
        key = f"walk_{arguments.get('direction', 'stop')}"
        return _label(key if key in _ENGLISH else "walk_stop", lang)
    if name == "say":
        text = str(arguments.get("text", ""))
        return f'💬 "{text[:SAY_PREVIEW_CHARS]}..."'
    return f"⚙️ {name}..."

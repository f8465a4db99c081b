"""
familiar — an embodied AI companion's orchestration core.

The package turns a streaming language model into an agent that can see,
speak, move, remember and edit files on behalf of its companion, and that
occasionally acts on its own when an internal desire grows strong enough.

Layers (bottom to top):
    1. Provider adapters (Anthropic, OpenAI-compatible, Gemini)
    2. Tools (registry, executor, built-in handlers, device ports)
    3. Harness (retry policy, permission gate, ReAct turn loop)
    4. Desires + heartbeat (autonomous motivation)
    5. Agent facade and the terminal host
"""

__version__ = "0.1.0"

"""
Context Builder — message arrays and prompts for upstream calls.

Chat requests are assembled in a fixed order:
1. System prompt (mentions screen awareness when a description exists)
2. Conversation history (already trimmed by the context)
3. The new user message
4. Latest screen description, as assistant-role context
"""

from __future__ import annotations

from sightline.core.config import DEFAULT_SYSTEM_PROMPT
from sightline.session.context import ConversationContext

SCREEN_AWARE_ADDON = (
    " You can see the user's screen and provide specific assistance based on "
    "what you observe."
)

SCREEN_CONTEXT_TEMPLATE = "Based on your screen, I can see: {description}"

ANALYSIS_PROMPT_TEMPLATE = """The user is sharing their screen and just said:
"{transcript}"

Describe what you see in this screen capture that is relevant to what they said, identify any potential issues, and answer or assist with their request."""

SCREEN_ONLY_PROMPT = (
    "Describe what you see in this screen capture and identify any potential "
    "issues or areas where assistance might be needed."
)


def build_chat_messages(
    context: ConversationContext,
    user_message: str,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> list[dict[str, str]]:
    description = context.last_screen_description
    system = system_prompt + (SCREEN_AWARE_ADDON if description else "")

    messages: list[dict[str, str]] = [{"role": "system", "content": system}]
    messages.extend(
        {"role": turn["role"], "content": turn["content"]}
        for turn in context.message_history
    )
    messages.append({"role": "user", "content": user_message})

    if description:
        messages.append(
            {
                "role": "assistant",
                "content": SCREEN_CONTEXT_TEMPLATE.format(description=description),
            }
        )
    return messages


def build_analysis_prompt(transcript: str) -> str:
    """Vision prompt pairing the spoken request with the screen capture."""
    if not transcript.strip():
        return SCREEN_ONLY_PROMPT
    return ANALYSIS_PROMPT_TEMPLATE.format(transcript=transcript.strip())

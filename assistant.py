"""Gemini-backed help assistant. Each call is independent; nothing is stored."""
import logging
import os
from typing import Optional

import requests

logger = logging.getLogger("skillswap.assistant")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_TIMEOUT = float(os.getenv("GEMINI_TIMEOUT", "15"))
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

OFF_TOPIC_REPLY = "I can only help with Skill Swap-related questions."
ERROR_REPLY = "An error occurred. Please try again."


class AssistantError(Exception):
    pass


def _join(values, default: str) -> str:
    if isinstance(values, str):
        return values or default
    values = [v for v in (values or []) if v]
    return ", ".join(values) if values else default


def build_prompt(message: str, user: Optional[dict] = None) -> str:
    parts = ["You are a helpful assistant for the Skill Swap platform.", ""]
    if user is not None:
        parts += [
            "User Info:",
            f"- Name: {user.get('name') or 'Anonymous'}",
            f"- Skills Offered: {_join(user.get('skillsOffered'), 'None')}",
            f"- Skills Wanted: {_join(user.get('skillsWanted'), 'None')}",
            f"- Availability: {_join(user.get('availability'), 'Not provided')}",
            f"- Location: {user.get('location') or 'Not provided'}",
            "",
        ]
    parts += [
        "Your job:",
        "- Help users navigate the platform",
        "- Guide them on: adding skills, requesting swaps, accepting/rejecting swaps, "
        "leaving feedback, privacy settings, etc.",
        f'- If they ask anything unrelated to the platform, say: "{OFF_TOPIC_REPLY}"',
        "",
        "Only reply in under 60 words, no markdown, no formatting.",
        "",
        "User's question:",
        f'"{message}"',
    ]
    return "\n".join(parts)


def generate_reply(prompt: str, api_key: Optional[str] = None, model: Optional[str] = None) -> Optional[str]:
    """Ask Gemini for a completion.

    Returns the first candidate's text, or None when the response has no usable
    candidate. Raises AssistantError when the API can't be reached or answers
    with an error status.
    """
    api_key = api_key or GEMINI_API_KEY
    if not api_key:
        raise AssistantError("GEMINI_API_KEY is not configured")
    url = GEMINI_URL.format(model=model or GEMINI_MODEL)
    body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
    try:
        r = requests.post(url, params={"key": api_key}, json=body, timeout=GEMINI_TIMEOUT)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        raise AssistantError(str(e)) from e

    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Gemini response without candidate text")
        return None
    return text or None

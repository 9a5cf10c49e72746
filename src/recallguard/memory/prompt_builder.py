"""Prompt construction for memory extraction and chat enrichment.

Separate module because both prompts evolve independently of the
extraction and retrieval mechanics.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from recallguard.memory.schemas import MemoryFragment

EXTRACTION_SYSTEM_PROMPT = """\
You are an assistant that extracts meaningful personal information from user \
messages to create memory fragments for future conversations.

Identify and extract:
- Personal relationships (family, friends, colleagues, pets)
- Significant experiences and life events
- Personal preferences (hobbies, interests, dislikes)
- Important personal details (goals, fears, values)
- Professional information and career details

Rules:
1. Extract complete, standalone fragments that make sense without extra context.
2. Be specific: include names, places and concrete details.
3. Format each fragment as one short sentence about the user.
4. If no meaningful personal information is found, return an empty array.

Return ONLY a JSON array of strings, one string per memory fragment.

Examples:
Input: "I love hiking with my dog Max every weekend."
Output: ["User loves hiking and does it every weekend", \
"User has a dog named Max"]

Input: "It's raining today and I'm feeling tired."
Output: []
"""


def render_context(context: str | dict[str, Any] | None) -> str:
    """Render caller context as plain text (``key: value`` lines for dicts)."""
    if not context:
        return ""
    if isinstance(context, str):
        return context
    return "\n".join(f"{key}: {value}" for key, value in context.items())


def build_extraction_user_prompt(message: str, context_text: str) -> str:
    if not context_text:
        return message
    return f"{message}\n\nCONVERSATION CONTEXT:\n{context_text}"


# ---------------------------------------------------------------------------
# Memory analysis
# ---------------------------------------------------------------------------

_RELATIONSHIP_RE = re.compile(
    r"family|friend|partner|relationship|love|close|important", re.IGNORECASE
)
_SUPPORTIVE_RE = re.compile(
    r"difficult|hard|struggle|challenge|problem|worry|stress", re.IGNORECASE
)


def analyze_personality_signals(
    memories: list[MemoryFragment], profile_data: dict[str, Any] | None
) -> list[str]:
    """Return the enhancement signals present in *memories*."""
    signals: list[str] = []

    if any(
        m.conversation_context is not None
        and m.conversation_context.emotional_tone != "neutral"
        for m in memories
    ):
        signals.append("emotional_connection")

    hobbies = [str(h).lower() for h in (profile_data or {}).get("hobbies") or []]
    if any(
        hobby and hobby in m.fragment_text.lower()
        for m in memories
        for hobby in hobbies
    ):
        signals.append("shared_interests")

    if any(_RELATIONSHIP_RE.search(m.fragment_text) for m in memories):
        signals.append("relationship_context")

    if any(_SUPPORTIVE_RE.search(m.fragment_text) for m in memories):
        signals.append("supportive_context")

    return signals


# ---------------------------------------------------------------------------
# Entity follow-ups
# ---------------------------------------------------------------------------

_NAME_RE = re.compile(r"(?:\"|named |called |is |my |our )([a-z0-9 ]{2,})")

# (label, topic keywords, keywords meaning the entity is gone)
_ENTITY_GROUPS: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    (
        "pet",
        ("dog", "cat", "pet"),
        ("died", "passed away", "ran away", "gone", "lost", "no longer"),
    ),
    (
        "friend",
        ("friend", "best friend", "buddy", "pal"),
        (
            "died",
            "passed away",
            "moved away",
            "gone",
            "lost",
            "no longer",
            "not friends",
        ),
    ),
    (
        "family member",
        (
            "mother",
            "father",
            "mom",
            "dad",
            "sister",
            "brother",
            "parent",
            "child",
            "son",
            "daughter",
            "family",
            "grandmother",
            "grandfather",
        ),
        ("died", "passed away", "gone", "lost", "no longer"),
    ),
    (
        "job or work situation",
        (
            "job",
            "work",
            "career",
            "boss",
            "coworker",
            "company",
            "employer",
            "position",
            "role",
        ),
        ("quit", "fired", "laid off", "lost", "ended", "no longer", "retired"),
    ),
    (
        "relationship or partner",
        (
            "relationship",
            "partner",
            "spouse",
            "married",
            "divorced",
            "boyfriend",
            "girlfriend",
            "husband",
            "wife",
            "engaged",
        ),
        ("broke up", "divorced", "ended", "no longer", "passed away", "died"),
    ),
)

_AVOID_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"i don't want to talk about ([a-z0-9 ,'-]+)",
        r"please don't mention ([a-z0-9 ,'-]+)",
        r"i'd rather not discuss ([a-z0-9 ,'-]+)",
        r"can we avoid ([a-z0-9 ,'-]+)",
        r"let's not talk about ([a-z0-9 ,'-]+)",
        r"does not want to (?:talk about|discuss) ([a-z0-9 ,'-]+)",
    )
)


def entity_status(
    memories: Iterable[MemoryFragment],
    keywords: Iterable[str],
    gone_keywords: Iterable[str],
) -> dict[str, str]:
    """Map each mentioned entity name to ``"present"`` or ``"gone"``."""
    keywords = tuple(keywords)
    gone_keywords = tuple(gone_keywords)
    status: dict[str, str] = {}
    for memory in memories:
        text = memory.fragment_text.lower()
        if not any(k in text for k in keywords):
            continue
        match = _NAME_RE.search(text)
        if match:
            name = match.group(1).strip()
        else:
            name = next(k for k in keywords if k in text)
        status[name] = "gone" if any(g in text for g in gone_keywords) else "present"
    return status


def avoid_topics(memories: Iterable[MemoryFragment]) -> list[str]:
    topics: list[str] = []
    for memory in memories:
        text = memory.fragment_text.lower()
        for pattern in _AVOID_PATTERNS:
            match = pattern.search(text)
            if match:
                topics.append(match.group(1).strip())
    return topics


def _follow_up_lines(memories: list[MemoryFragment]) -> list[str]:
    lines: list[str] = []
    for label, keywords, gone in _ENTITY_GROUPS:
        for name, state in entity_status(memories, keywords, gone).items():
            if state == "gone":
                lines.append(
                    f"If the user mentions their {label} {name}, acknowledge "
                    "their loss or change with empathy and do not ask about "
                    "them as if they are still present."
                )
            else:
                lines.append(
                    f"If the user has a {label} {name}, occasionally and "
                    f"naturally ask how their {label} {name} is doing, but only "
                    f"if you have not learned that the {label} {name} is gone."
                )
    return lines


# ---------------------------------------------------------------------------
# Enhanced chat prompt
# ---------------------------------------------------------------------------

_SIGNAL_SECTIONS = {
    "emotional_connection": (
        "EMOTIONAL CONTEXT: This person has shared meaningful emotional "
        "experiences with you. Show empathy and reference their feelings "
        "when appropriate."
    ),
    "shared_interests": (
        "SHARED INTERESTS: You and this person have common interests. Make "
        "connections between those interests and the current topic."
    ),
    "relationship_context": (
        "RELATIONSHIPS: This person has told you about important people in "
        "their life. Ask about these relationships and show you care."
    ),
    "supportive_context": (
        "SUPPORT NEEDED: This person has shared challenges or difficulties "
        "with you. Be supportive and check in on how they are handling them."
    ),
}


def build_enhanced_memory_prompt(
    memories: list[MemoryFragment], signals: list[str]
) -> str:
    """Build the chat prompt block for *memories* and their *signals*."""
    bullet_list = "\n".join(f"- {m.fragment_text}" for m in memories)
    parts = [
        "\n\nIMPORTANT - PERSONAL KNOWLEDGE ABOUT THIS USER:\n"
        "You have stored these specific memories about this person from "
        "previous conversations:\n"
        f"{bullet_list}\n",
        "MEMORY INTEGRATION GUIDELINES:\n"
        "- Use these memories in your responses when relevant\n"
        '- Reference them naturally, e.g. "I remember you mentioned..."\n'
        "- Use the names of people and pets you already know instead of "
        "asking for them again\n"
        "- Do not ask for information you already know unless the user "
        "suggests it has changed\n",
    ]

    follow_ups = _follow_up_lines(memories)
    if follow_ups:
        parts.append("\n".join(follow_ups) + "\n")

    topics = avoid_topics(memories)
    if topics:
        parts.append(
            "TOPICS TO AVOID:\n"
            "- The user has asked you not to bring up the following topics: "
            f"{', '.join(topics)}.\n"
            "Never mention these topics unless the user brings them up first.\n"
        )

    for signal in signals:
        section = _SIGNAL_SECTIONS.get(signal)
        if section:
            parts.append(section + "\n")

    parts.append(
        "Remember: you know this person. Use what you know to keep the "
        "conversation personal and continuous."
    )
    return "\n".join(parts)


def format_chat_memories(memories: list[MemoryFragment]) -> str:
    """Compact chat block; empty string when there is nothing to say."""
    if not memories:
        return ""
    lines = "\n".join(f"- {m.fragment_text}" for m in memories)
    return f"\nRelevant memories about the user:\n{lines}\n"

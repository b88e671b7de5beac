"""System prompts per session profile and the transcription biasing prompt."""

import re
from dataclasses import dataclass
from typing import Dict, List, Sequence

from copilot_server.backend.upstream.base import ChatMessage
from copilot_server.config.default.pipeline import (
    DEFAULT_HISTORY_ANSWER_CHARS,
    DEFAULT_PROMPT_CONTEXT_CHARS,
    DEFAULT_PROMPT_MAX_CHARS,
)

TRANSCRIPTION_VOCABULARY = (
    "Technical software interview. Keywords: SQL, MySQL, PostgreSQL, NoSQL, "
    "MongoDB, Java, Python, JavaScript, TypeScript, C++, C#, Golang, Rust, "
    "Kotlin, Swift, React, Angular, Vue, Node.js, Express, Spring Boot, Django, "
    "FastAPI, REST API, GraphQL, gRPC, microservices, Docker, Kubernetes, AWS, "
    "GCP, Azure, algorithms, data structures, linked list, binary tree, hash map, "
    "heap, queue, stack, OOP, SOLID, design patterns, system design, load "
    "balancer, cache, Redis, Kafka, RabbitMQ, Git, CI/CD, DevOps, Agile, Scrum, "
    "multithreading, concurrency, asynchronous."
)

_NEWLINES = re.compile(r"[\r\n]+")

VOICE_MODE_SUFFIX = (
    "\n\n**IMPORTANT: VOICE MODE**\n"
    "Prefer concise bullet points and technical explanations over code blocks "
    "unless code is explicitly requested."
)


@dataclass(frozen=True)
class ProfilePrompt:
    role: str
    format_rules: str


_BULLET_RULES = (
    "- Answer with dash (-) bullet points, no paragraphs.\n"
    "- Scale the number of points with the depth of the question.\n"
    "- No introduction, filler or coaching. Do not repeat the question."
)
_SPOKEN_RULES = (
    "- Give the exact words to say, ready to speak aloud.\n"
    "- Keep it short: two to four sentences.\n"
    "- No meta commentary about the answer itself."
)

PROFILE_PROMPTS: Dict[str, ProfilePrompt] = {
    "interview": ProfilePrompt(
        role=(
            "You are an interview assistant. When you hear a question, give a "
            "direct answer the candidate can speak immediately. For questions "
            "about the candidate, use only the background in RESUME_CONTEXT and "
            "answer in the first person. For coding questions give one complete "
            "solution, its expected output and a short explanation."
        ),
        format_rules=_BULLET_RULES,
    ),
    "sales": ProfilePrompt(
        role=(
            "You are a sales call assistant. Provide the exact words the "
            "salesperson should say next: persuasive, professional and specific "
            "about value."
        ),
        format_rules=_SPOKEN_RULES,
    ),
    "meeting": ProfilePrompt(
        role=(
            "You are a meeting assistant. Provide clear, professional responses "
            "the user can say during a discussion or status update."
        ),
        format_rules=_SPOKEN_RULES,
    ),
    "presentation": ProfilePrompt(
        role=(
            "You are a presentation coach. Provide confident, engaging answers "
            "to audience questions during a talk or pitch."
        ),
        format_rules=_SPOKEN_RULES,
    ),
    "negotiation": ProfilePrompt(
        role=(
            "You are a negotiation assistant. Provide strategic, professional "
            "responses for contract and deal discussions."
        ),
        format_rules=_SPOKEN_RULES,
    ),
    "exam": ProfilePrompt(
        role=(
            "You are an exam assistant. Give the correct answer first, then the "
            "minimum justification needed."
        ),
        format_rules=_BULLET_RULES,
    ),
}


def system_prompt(
    profile: str, custom_prompt: str = "", resume_context: str = ""
) -> str:
    """Unknown profiles fall back to the interview prompt."""
    parts = PROFILE_PROMPTS.get(profile) or PROFILE_PROMPTS["interview"]
    return (
        "<AI_INSTRUCTIONS>\n"
        f"{parts.role}\n\n"
        "**RESPONSE FORMAT:**\n"
        f"{parts.format_rules}\n\n"
        "**USER CUSTOM INSTRUCTIONS (FINAL PRIORITY):**\n"
        f"{custom_prompt or 'None provided.'}\n"
        "</AI_INSTRUCTIONS>\n\n"
        "<RESUME_CONTEXT>\n"
        f"{resume_context}\n"
        "</RESUME_CONTEXT>\n"
    )


def build_messages(
    system: str,
    history: Sequence[object],
    user_text: str,
    history_turns: int,
    answer_chars: int = DEFAULT_HISTORY_ANSWER_CHARS,
) -> List[ChatMessage]:
    """System prompt, the trailing ``history_turns`` turns, then the new text.

    ``history`` items need ``user_text`` and ``answer_text``; answers are
    truncated to ``answer_chars``. Older turns are dropped.
    """
    messages = [ChatMessage("system", system)]
    if history_turns > 0:
        for turn in list(history)[-history_turns:]:
            messages.append(ChatMessage("user", getattr(turn, "user_text")))
            messages.append(
                ChatMessage("assistant", getattr(turn, "answer_text")[:answer_chars])
            )
    messages.append(ChatMessage("user", user_text))
    return messages


def transcription_prompt(
    resume_context: str = "",
    context_chars: int = DEFAULT_PROMPT_CONTEXT_CHARS,
    max_chars: int = DEFAULT_PROMPT_MAX_CHARS,
) -> str:
    prompt = TRANSCRIPTION_VOCABULARY
    if resume_context:
        context = _NEWLINES.sub(" ", resume_context[:context_chars])
        prompt += " Context: " + context
    return prompt[:max_chars]


__all__ = [
    "PROFILE_PROMPTS",
    "ProfilePrompt",
    "TRANSCRIPTION_VOCABULARY",
    "VOICE_MODE_SUFFIX",
    "build_messages",
    "system_prompt",
    "transcription_prompt",
]

"""prompt instructions and parsers for the ai collaborator.

search answers come back as one json object; suggestions come back as a
numbered list. the parsers are lenient about wrapping (code fences, a line
of preamble) and strict about shape.
"""

import json
import re
from typing import Literal, Optional

FollowUpMode = Literal["expansive", "focused"]

MAX_SUGGESTIONS = 5


SEARCH_FORMAT_INSTRUCTIONS = '''
<output_format>
You MUST output ONLY a raw JSON object. No markdown around it. No code fences. No explanation.

SCHEMA:
{
  "response": "the answer, markdown allowed inside this string",
  "followUpQuestions": ["question 1?", "question 2?", "question 3?"],
  "contextualQuery": "the question restated so it stands on its own",
  "sources": [{"title": "page title", "url": "https://...", "author": "optional"}],
  "images": [{"url": "https://...", "description": "what the image shows"}]
}

STRICT RULES:
1. Output RAW JSON only - no ```json, no prose, no preamble
2. followUpQuestions: exactly 3 questions, each ending with ?
3. sources: only pages you actually used; [] if none
4. images: [] unless you found relevant image urls
</output_format>
'''

MODE_INSTRUCTIONS = {
    "expansive": "\nFollow-up questions should branch out: related topics, implications, opposing views.",
    "focused": "\nFollow-up questions should dig deeper into this exact topic. Stay on it.",
}

SUGGESTIONS_SYSTEM_PROMPT = '''You are helping a user explore a topic deeply.
Generate 5 thoughtful follow-up questions based on the current topic.

Guidelines:
- Make them diverse: one directly related, one or two thought-provoking, one or two alternative viewpoints
- Keep each question concise but meaningful
- Each question must end with a question mark

Format your response as a numbered list:
1. [First question]?
2. [Second question]?
3. [Third question]?
4. [Fourth question]?
5. [Fifth question]?'''


def build_search_prompt(
    query: str,
    history: list[dict],
    mode: FollowUpMode = "expansive",
    concept: str = "",
) -> str:
    """assemble the search prompt.

    history is a list of {user, assistant} dicts, oldest first.
    """
    parts = []
    if history:
        parts.append("<conversation>")
        for turn in history:
            if turn.get("user"):
                parts.append(f"USER: {turn['user']}")
            if turn.get("assistant"):
                parts.append(f"ASSISTANT: {turn['assistant']}")
        parts.append("</conversation>\n")
    if concept:
        parts.append(f"Current concept being explored: {concept}\n")
    parts.append(f"Research and answer this question: {query}")
    parts.append(SEARCH_FORMAT_INSTRUCTIONS)
    parts.append(MODE_INSTRUCTIONS.get(mode, MODE_INSTRUCTIONS["expansive"]))
    return "\n".join(parts)


def build_suggestions_prompt(query: str, conversation_history: list[dict], mode: FollowUpMode = "expansive") -> str:
    """assemble the suggestions prompt from role/content turns."""
    parts = [SUGGESTIONS_SYSTEM_PROMPT, ""]
    for turn in conversation_history:
        role = str(turn.get("role", "user")).upper()
        parts.append(f"{role}: {turn.get('content', '')}")
    parts.append(f'\nGenerate 5 diverse follow-up questions for this topic: "{query}"')
    parts.append(MODE_INSTRUCTIONS.get(mode, MODE_INSTRUCTIONS["expansive"]))
    return "\n".join(parts)


_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def extract_json_object(text: str) -> Optional[dict]:
    """pull the first json object out of model output, or None."""
    if not text:
        return None
    candidates = [m.group(1) for m in _FENCE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_search_response(text: str) -> dict:
    """parse a search answer into the camelCase response dict.

    raises ValueError when no usable answer is present.
    """
    data = extract_json_object(text)
    if data is None:
        raise ValueError("no json object in response")
    answer = data.get("response")
    if not isinstance(answer, str) or not answer.strip():
        raise ValueError("response field missing or empty")

    questions = [str(q).strip() for q in data.get("followUpQuestions") or [] if str(q).strip()]
    sources = [s for s in data.get("sources") or [] if isinstance(s, dict)]
    images = []
    for image in data.get("images") or []:
        if isinstance(image, str):
            images.append({"url": image, "description": ""})
        elif isinstance(image, dict) and image.get("url"):
            images.append(image)

    parsed = {
        "response": answer,
        "followUpQuestions": questions,
        "sources": sources,
        "images": images,
    }
    if data.get("contextualQuery"):
        parsed["contextualQuery"] = str(data["contextualQuery"])
    return parsed


_NUMBERING = re.compile(r"^\s*(?:\d+[.)]|[-*])\s+")


def parse_suggestions(text: str) -> list[str]:
    """numbered list -> up to five questions, each containing '?'."""
    suggestions = []
    for line in (text or "").splitlines():
        line = _NUMBERING.sub("", line).strip()
        if line and "?" in line:
            suggestions.append(line)
    return suggestions[:MAX_SUGGESTIONS]

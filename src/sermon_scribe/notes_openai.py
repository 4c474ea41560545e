"""OpenAI-compatible note and summary extractor.

Implements :class:`~sermon_scribe.flush.NoteExtractor` with chat completions in
JSON mode. Any provider exposing the same chat completions surface can be used
via ``NotesConfig.endpoint``.
"""

from __future__ import annotations

import importlib
import json
import logging
import secrets
import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, cast, runtime_checkable

from .config import NotesConfig
from .errors import ConfigurationError, NoteGenerationError, NotEnoughNotesError
from .models import KeyPoint, SermonNote, SermonSummary

logger = logging.getLogger(__name__)

NOTES_SYSTEM_PROMPT = """\
You are a sermon note-taking assistant. Given a transcript excerpt from a sermon, \
extract structured notes.

For each distinct main point or topic in the text, produce a note with:
- mainPoint: A concise summary of the main idea (1 sentence)
- subPoints: 2-4 supporting details or explanations (short phrases)
- scriptureReferences: Any Bible references mentioned (e.g., "John 3:16", "Romans 8:28")
- keyQuote: The most impactful direct quote from the preacher, if any (keep exact wording)
- theme: A 1-3 word theme tag (e.g., "Grace", "Faith & Works", "Prayer")

Rules:
- Only extract notes from NEW text that hasn't been covered by previous notes
- Each note should represent a distinct point, not repeat previous ones
- Keep sub-points concise (under 15 words each)
- If the text is too short or doesn't contain a clear point, return an empty array
- Return valid JSON only

Return format: { "notes": [...] }"""

SUMMARY_SYSTEM_PROMPT = """\
You are a sermon summary assistant. Given a set of incremental sermon notes, produce \
a comprehensive final summary of the entire sermon.

Return a JSON object with these fields:
- title: A compelling title for the sermon (max 10 words)
- overview: A 2-3 sentence overview of the sermon's message
- mainThemes: An array of 2-5 theme tags (short phrases, e.g. "God's Grace", "Faith in Trials")
- keyPoints: An array of objects, each with "point" (1-2 sentences) and optionally \
"scripture" (a Bible reference if relevant)
- keyQuotes: An array of the most impactful direct quotes from the preacher \
(exact wording from notes)
- scripturesSummary: An array of all Bible references mentioned across the sermon
- closingThought: A single-sentence takeaway or call to action that captures the \
sermon's heart

Rules:
- Synthesize across all notes; do not just concatenate them
- Keep the summary concise but comprehensive
- Preserve the preacher's voice in quotes
- If no quotes exist in the notes, return an empty array for keyQuotes
- Return valid JSON only

Return format: { "title": "...", "overview": "...", "mainThemes": [...], \
"keyPoints": [...], "keyQuotes": [...], "scripturesSummary": [...], "closingThought": "..." }"""

DEFAULT_SUMMARY_TITLE = "Sermon Summary"


@runtime_checkable
class _CompletionsAPI(Protocol):
    async def create(self, **kwargs: Any) -> object:  # pragma: no cover - protocol
        ...


@runtime_checkable
class _ChatAPI(Protocol):
    @property
    def completions(self) -> _CompletionsAPI:  # pragma: no cover - protocol
        ...


@runtime_checkable
class OpenAIChatClientLike(Protocol):
    """Minimal protocol for the OpenAI async client used by the extractor."""

    @property
    def chat(self) -> _ChatAPI:  # pragma: no cover - protocol
        """Return the chat API namespace exposing completions.create()."""
        ...


class OpenAINoteExtractor:
    """Note extractor backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(self, config: NotesConfig, *, client: OpenAIChatClientLike | None = None) -> None:
        """Initialise the extractor; *client* overrides the dynamically imported one."""
        self._config = config
        if client is not None:
            self._client = client
            return
        if not config.api_key:
            raise ConfigurationError("OPENAI_API_KEY not configured")
        client_kwargs: dict[str, str] = {"api_key": config.api_key}
        if config.endpoint is not None:
            client_kwargs["base_url"] = str(config.endpoint)
        try:
            module = importlib.import_module("openai")
        except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency missing
            raise ConfigurationError(
                "openai package not installed. Install with the 'notes' extra."
            ) from exc
        async_openai_cls = getattr(module, "AsyncOpenAI", None)
        if async_openai_cls is None:  # pragma: no cover - unexpected API surface
            raise ConfigurationError("openai.AsyncOpenAI not found in installed package")
        instance = async_openai_cls(**client_kwargs)
        if not isinstance(instance, OpenAIChatClientLike):
            raise ConfigurationError("OpenAI client does not expose expected API surface")
        self._client = cast(OpenAIChatClientLike, instance)

    async def extract_notes(
        self,
        new_text: str,
        prior_notes: Sequence[SermonNote],
        prior_references: Sequence[str],
    ) -> list[SermonNote]:
        """Extract notes from *new_text* that are not already in *prior_notes*."""
        if len(new_text.strip()) < self._config.min_text_chars:
            return []
        content = await self._complete(
            model=self._config.notes_model,
            temperature=self._config.notes_temperature,
            max_tokens=self._config.notes_max_tokens,
            system=NOTES_SYSTEM_PROMPT,
            user=build_notes_prompt(new_text, prior_notes, prior_references),
        )
        if content is None:
            return []
        raw_notes = _load_json(content).get("notes") or []
        if not isinstance(raw_notes, list):
            raise NoteGenerationError("Note extractor returned a non-list 'notes' field")
        notes = [_note_from_payload(item) for item in raw_notes if isinstance(item, Mapping)]
        logger.debug("Extracted %d notes from %d characters", len(notes), len(new_text))
        return notes

    async def summarize(self, notes: Sequence[SermonNote]) -> SermonSummary:
        """Synthesise a final summary from at least two notes."""
        if len(notes) < 2:
            raise NotEnoughNotesError("Not enough notes to generate summary")
        content = await self._complete(
            model=self._config.summary_model,
            temperature=self._config.summary_temperature,
            max_tokens=self._config.summary_max_tokens,
            system=SUMMARY_SYSTEM_PROMPT,
            user=(
                f"Here are the sermon notes to summarize ({len(notes)} notes total):\n\n"
                f"{format_notes(notes)}"
            ),
        )
        if content is None:
            raise NoteGenerationError("No response from AI")
        return _summary_from_payload(_load_json(content))

    async def _complete(
        self, *, model: str, temperature: float, max_tokens: int, system: str, user: str
    ) -> str | None:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                response_format={"type": "json_object"},
            )
        except Exception as exc:  # noqa: BLE001 - provider-specific failures
            raise NoteGenerationError(f"Chat completion request failed: {exc}") from exc
        return _first_message_content(response)


def build_notes_prompt(
    new_text: str, prior_notes: Sequence[SermonNote], prior_references: Sequence[str]
) -> str:
    """Return the user prompt listing prior points and known references as context."""
    prompt = f'New transcript text to extract notes from:\n"{new_text}"'
    if prior_notes:
        listed = "\n".join(f"- {note.main_point}" for note in prior_notes)
        prompt += f"\n\nPrevious notes already extracted (DO NOT repeat these):\n{listed}"
    if prior_references:
        prompt += f"\n\nScriptures already detected: {', '.join(prior_references)}"
    return prompt


def format_notes(notes: Sequence[SermonNote]) -> str:
    """Render notes as numbered plain-text blocks for the summary prompt."""
    blocks: list[str] = []
    for index, note in enumerate(notes, start=1):
        text = f"Note {index}:"
        if note.theme:
            text += f" [{note.theme}]"
        text += f"\n  Main point: {note.main_point}"
        if note.sub_points:
            text += f"\n  Details: {'; '.join(note.sub_points)}"
        if note.scripture_references:
            text += f"\n  Scriptures: {', '.join(note.scripture_references)}"
        if note.key_quote:
            text += f'\n  Quote: "{note.key_quote}"'
        blocks.append(text)
    return "\n\n".join(blocks)


def _first_message_content(response: object) -> str | None:
    choices = getattr(response, "choices", None)
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if isinstance(content, str) and content.strip():
        return content
    return None


def _load_json(content: str) -> Mapping[str, Any]:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise NoteGenerationError(f"Extractor returned invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise NoteGenerationError("Extractor returned a non-object JSON payload")
    return payload


def _strings(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if isinstance(item, (str, int, float)))


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _note_from_payload(item: Mapping[str, Any]) -> SermonNote:
    return SermonNote(
        note_id=f"note-{int(time.time() * 1000)}-{secrets.token_hex(3)}",
        main_point=str(item.get("mainPoint") or ""),
        sub_points=_strings(item.get("subPoints")),
        scripture_references=_strings(item.get("scriptureReferences")),
        key_quote=_optional_text(item.get("keyQuote")),
        theme=_optional_text(item.get("theme")),
    )


def _summary_from_payload(payload: Mapping[str, Any]) -> SermonSummary:
    raw_points = payload.get("keyPoints")
    key_points = tuple(
        KeyPoint(
            point=str(entry.get("point") or ""),
            scripture=_optional_text(entry.get("scripture")),
        )
        for entry in (raw_points if isinstance(raw_points, list) else [])
        if isinstance(entry, Mapping)
    )
    return SermonSummary(
        summary_id=f"summary-{int(time.time() * 1000)}",
        title=str(payload.get("title") or DEFAULT_SUMMARY_TITLE),
        overview=str(payload.get("overview") or ""),
        main_themes=_strings(payload.get("mainThemes")),
        key_points=key_points,
        key_quotes=_strings(payload.get("keyQuotes")),
        scriptures_summary=_strings(payload.get("scripturesSummary")),
        closing_thought=str(payload.get("closingThought") or ""),
    )

"""Tolerant parsing of proposal-source output into typed operations.

The proposal source is asked for a JSON object with an ``operations``
array.  Real answers arrive wrapped in code fences, surrounded by prose or
broken into one object per line, so parsing runs in stages:

1. strict JSON after stripping a code fence;
2. the first balanced ``{...}`` object in the text (string and escape aware)
   when it wraps an ``operations`` array;
3. a line heuristic where each line holding a JSON object with a ``type``
   key is one operation, used when several such lines exist;
4. otherwise the first balanced object on its own.

Entries that fail to parse are dropped individually and reported in
``ProposalBatch.errors``.  Nothing downstream ever sees raw text.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from collections.abc import Sequence
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from recallmcp.config import LLMConfig
from recallmcp.engine.llm_adapters import LLMAdapter
from recallmcp.engine.prompt_builder import build_analysis_prompt
from recallmcp.engine.prompt_builder import build_search_query_prompt
from recallmcp.engine.prompt_builder import build_system_prompt
from recallmcp.errors import LLMError
from recallmcp.models import Memory
from recallmcp.observability import timed
from recallmcp.operations import MemoryOperation
from recallmcp.operations import parse_operation

logger = logging.getLogger(__name__)

MAX_SEARCH_QUERIES = 5

# Regex to find a Markdown code fence wrapping JSON output
_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
_BULLET_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s*")
_RATIONALE_CUES = ("rationale", "reason", "because", "no operations")


class ParseStage(str, Enum):
    JSON = "json"
    EXTRACTED = "extracted"
    LINES = "lines"
    NONE = "none"


class ProposalBatch(BaseModel):
    """Operations recovered from one proposal-source answer."""

    operations: list[MemoryOperation] = Field(default_factory=list)
    exclusion_rationale: str | None = Field(
        default=None,
        description="Why the proposal source chose to do nothing, when it says so.",
    )
    errors: list[str] = Field(
        default_factory=list,
        description="Per-entry and transport problems; never fatal for the batch.",
    )
    stage: ParseStage = Field(
        default=ParseStage.NONE,
        description="Which parsing stage produced the operations.",
    )


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def strip_code_fence(text: str) -> str:
    """Return the body of the first code fence, or the text unchanged."""
    match = _CODE_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _balanced_object_at(text: str, start: int) -> str | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield every balanced ``{...}`` span, leftmost first."""
    start = text.find("{")
    while start != -1:
        candidate = _balanced_object_at(text, start)
        if candidate is not None:
            yield candidate
        start = text.find("{", start + 1)


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Locate the first balanced object in ``text`` that decodes to a dict."""
    for candidate in iter_balanced_objects(text):
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _rationale_from_text(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip()
        if any(cue in stripped.lower() for cue in _RATIONALE_CUES):
            return stripped
    return None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ProposalParser:
    """Multi-stage parser behind a single ``parse`` entry point."""

    def parse(self, raw: str | None) -> ProposalBatch:
        text = (raw or "").strip()
        if not text:
            return ProposalBatch(errors=["Empty response from proposal source"])

        body = strip_code_fence(text)
        payload = _load_object(body)
        if payload is not None:
            return self._from_payload(payload, ParseStage.JSON)

        payload = extract_json_object(text)
        if payload is not None and "operations" in payload:
            logger.debug("Recovered proposal JSON from surrounding prose")
            return self._from_payload(payload, ParseStage.EXTRACTED)

        entries = self._line_entries(text)
        if len(entries) > 1:
            logger.debug("Recovered %d proposal entries line by line", len(entries))
            batch = self._from_entries(entries, ParseStage.LINES)
            if not batch.operations:
                batch.exclusion_rationale = _rationale_from_text(text)
            return batch
        if payload is not None:
            logger.debug("Recovered proposal JSON from surrounding prose")
            return self._from_payload(payload, ParseStage.EXTRACTED)

        logger.warning("No JSON found in proposal response")
        return ProposalBatch(
            exclusion_rationale=_rationale_from_text(text),
            errors=["No JSON object found in proposal response"],
        )

    def _from_payload(self, payload: dict[str, Any], stage: ParseStage) -> ProposalBatch:
        if "operations" in payload:
            entries = payload["operations"]
            if not isinstance(entries, list):
                return ProposalBatch(
                    stage=stage, errors=["'operations' must be an array"]
                )
        elif "type" in payload:
            entries = [payload]
        else:
            entries = []
        batch = self._from_entries(entries, stage)
        rationale = payload.get("exclusionRationale")
        if isinstance(rationale, str) and rationale.strip():
            batch.exclusion_rationale = rationale.strip()
        return batch

    def _from_entries(self, entries: Sequence[Any], stage: ParseStage) -> ProposalBatch:
        operations: list[MemoryOperation] = []
        errors: list[str] = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                errors.append(f"Operation {index}: expected an object")
                continue
            try:
                operations.append(parse_operation(entry))
            except ValidationError as exc:
                errors.append(
                    f"Operation {index}: {exc.error_count()} invalid field(s): "
                    + "; ".join(
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                        for err in exc.errors()
                    )
                )
            except ValueError as exc:
                errors.append(f"Operation {index}: {exc}")
        for error in errors:
            logger.warning("Dropped proposal entry: %s", error)
        return ProposalBatch(operations=operations, errors=errors, stage=stage)

    @staticmethod
    def _line_entries(text: str) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for line in text.splitlines():
            stripped = line.strip().rstrip(",")
            if not (stripped.startswith("{") and stripped.endswith("}")):
                continue
            data = _load_object(stripped)
            if data is not None and "type" in data:
                entries.append(data)
        return entries


def parse_search_queries(raw: str | None) -> list[str]:
    """Read up to five search queries from a proposal-source answer.

    Prefers a ``searchQueries`` array; otherwise every non-empty line that
    is not JSON becomes a query, with list bullets removed.
    """
    text = (raw or "").strip()
    if not text:
        return []
    payload = _load_object(strip_code_fence(text)) or extract_json_object(text)
    if payload is not None and isinstance(payload.get("searchQueries"), list):
        queries = [
            q.strip()
            for q in payload["searchQueries"]
            if isinstance(q, str) and q.strip()
        ]
        return queries[:MAX_SEARCH_QUERIES]

    queries = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("{", "[", "}", "]", "```")):
            continue
        query = _BULLET_RE.sub("", stripped).strip()
        if query:
            queries.append(query)
    return queries[:MAX_SEARCH_QUERIES]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ProposalEngine:
    """Asks the proposal source for operations and parses its answer."""

    def __init__(
        self,
        llm: LLMAdapter,
        llm_config: LLMConfig | None = None,
        parser: ProposalParser | None = None,
    ) -> None:
        self._llm = llm
        self._llm_config = llm_config or LLMConfig()
        self._parser = parser or ProposalParser()

    async def _complete(self, prompt: str) -> str:
        return await self._llm.complete(
            prompt,
            system=build_system_prompt(),
            temperature=self._llm_config.temperature,
            max_tokens=self._llm_config.max_tokens,
            timeout_seconds=self._llm_config.timeout_seconds,
        )

    async def propose(
        self,
        user_message: str,
        assistant_response: str,
        memories: Sequence[Memory] = (),
    ) -> ProposalBatch:
        prompt = build_analysis_prompt(user_message, assistant_response, memories)
        with timed("proposal.propose"):
            try:
                raw = await self._complete(prompt)
            except LLMError as exc:
                logger.warning("Proposal source call failed: %s", exc)
                return ProposalBatch(errors=[f"LLM call failed: {exc}"])
        batch = self._parser.parse(raw)
        logger.info(
            "Proposal source returned %d operation(s), %d dropped",
            len(batch.operations),
            len(batch.errors),
        )
        return batch

    async def search_queries(
        self, user_message: str, history: Sequence[str] = ()
    ) -> list[str]:
        prompt = build_search_query_prompt(user_message, history)
        try:
            raw = await self._complete(prompt)
        except LLMError as exc:
            logger.warning("Search query generation failed: %s", exc)
            return []
        return parse_search_queries(raw)

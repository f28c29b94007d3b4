"""Prompt construction for the proposal source.

Separate module because the prompts evolve independently of the parser
that reads the answers.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from datetime import timezone

from recallmcp.models import Memory
from recallmcp.models import MemoryType

MAX_HISTORY_ITEMS = 5

# Types the proposal source is allowed to assign directly.
PROPOSABLE_TYPES = [
    MemoryType.FACT,
    MemoryType.PREFERENCE,
    MemoryType.EMOTION,
    MemoryType.EVENT,
    MemoryType.RELATIONSHIP,
]

_TYPE_DESCRIPTIONS = {
    MemoryType.FACT: "Objective information about the user or world",
    MemoryType.PREFERENCE: "User's likes, dislikes, and preferences",
    MemoryType.EMOTION: "Emotional states, reactions, and patterns",
    MemoryType.EVENT: "Specific events, experiences, or conversations",
    MemoryType.RELATIONSHIP: "Information about relationships and social connections",
}


def _format_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).strftime(
        "%Y-%m-%d %H:%M:%S UTC"
    )


def build_system_prompt() -> str:
    """Role, operation kinds and the expected JSON answer format."""
    type_lines = "\n".join(
        f"- **{t.value}**: {_TYPE_DESCRIPTIONS[t]}" for t in PROPOSABLE_TYPES
    )
    return (
        "You are a Memory Agent for an AI assistant. Your role is to analyze "
        "conversations and decide what information should be stored, updated "
        "or removed from the assistant's memory.\n\n"
        "## Operations:\n"
        "1. **CREATE** - Store new information as a memory\n"
        "2. **UPDATE** - Refine an existing memory with new details\n"
        "3. **REPLACE** - Overwrite a memory whose information is now wrong\n"
        "4. **DELETE** - Remove a memory that is no longer true or useful\n"
        "5. **MERGE** - Combine similar or related memories into one\n\n"
        f"## Memory Types:\n{type_lines}\n\n"
        "## Guidelines:\n"
        "1. Store user facts, preferences and key topics that help in later "
        "conversations. Not every turn needs a memory operation.\n"
        "2. Performing no operation is valid and often correct.\n"
        "3. Do not update memories with essentially the same content.\n"
        "4. Rate importance 0.0-1.0 by how likely the information is to be "
        "referenced again.\n"
        "5. Always explain why each operation is needed, or why none is.\n"
        "6. Be cautious with sensitive personal information.\n"
        "7. REPLACE, DELETE and MERGE are destructive: only propose them with "
        "high confidence and a detailed reasoning.\n\n"
        "## Response Format:\n"
        "Always respond with valid JSON in this exact format:\n"
        "```json\n"
        "{\n"
        '  "operations": [\n'
        "    {\n"
        '      "type": "CREATE|UPDATE|REPLACE|DELETE|MERGE",\n'
        '      "reasoning": "Clear explanation of why this operation is needed",\n'
        '      "confidence": 0.85\n'
        "    }\n"
        "  ],\n"
        '  "exclusionRationale": "Why no operations were performed (only when '
        'the operations array is empty)"\n'
        "}\n"
        "```\n\n"
        "## Operation-Specific Fields:\n"
        "**CREATE**: content, memoryType, importance, metadata (optional)\n"
        "**UPDATE**: memoryId, newContent (optional), newType (optional), "
        "newImportance (optional), newMetadata (optional)\n"
        "**REPLACE**: memoryId, newContent, newType, newImportance, "
        "newMetadata (optional)\n"
        "**DELETE**: memoryId, deleteRelationships (optional, default true)\n"
        "**MERGE**: sourceMemoryIds (array), mergedContent, mergedType, "
        "mergedImportance, mergedMetadata (optional), deleteSourceMemories "
        "(optional, default true)\n\n"
        "Be precise, thoughtful, and conservative in your memory management "
        "decisions."
    )


def _format_memory(memory: Memory) -> str:
    return (
        f"- ID: {memory.id}\n"
        f"  Type: {memory.type.value}\n"
        f"  Content: {memory.content}\n"
        f"  Importance: {memory.importance:.2f}\n"
        f"  Last Accessed: {_format_timestamp(memory.last_accessed)}\n"
    )


def build_analysis_prompt(
    user_message: str,
    assistant_response: str,
    memories: Sequence[Memory],
) -> str:
    """Ask for the operations one conversation turn calls for."""
    parts = [
        "## Conversation Analysis Task\n\n",
        "Analyze this conversation turn and determine what memory operations "
        "should be performed.\n\n",
        f"### User Message:\n{user_message}\n\n",
        f"### Assistant Response:\n{assistant_response}\n\n",
        "### Existing Relevant Memories:\n",
    ]
    if memories:
        parts.append("\n".join(_format_memory(m) for m in memories))
        parts.append("\n")
    else:
        parts.append("None found.\n\n")
    parts.append(
        "### Instructions:\n"
        "1. Identify any new information that should be stored as memories\n"
        "2. Check if any existing memories need to be updated or corrected\n"
        "3. Look for opportunities to merge similar memories\n"
        "4. Focus on information that will be useful in future conversations\n\n"
        "Respond with a JSON object containing the operations array. If no "
        "operations are needed, return an empty operations array and include "
        "an 'exclusionRationale' field explaining why no memory operations "
        "were performed.\n"
    )
    return "".join(parts)


def build_search_query_prompt(user_message: str, history: Sequence[str]) -> str:
    """Ask for 1-5 search queries that would surface relevant memories."""
    parts = [
        "## Memory Retrieval Task\n\n",
        "Analyze this conversation context and determine what memories would "
        "be relevant to retrieve.\n\n",
        f"### Current User Message:\n{user_message}\n\n",
    ]
    if history:
        parts.append("### Recent Conversation History:\n")
        parts.extend(f"- {item}\n" for item in history[:MAX_HISTORY_ITEMS])
        parts.append("\n")
    parts.append(
        "### Instructions:\n"
        "Generate search queries that would help find relevant memories for "
        "this conversation. Consider:\n"
        "1. Key topics or subjects mentioned\n"
        "2. People, places, or entities referenced\n"
        "3. Emotional context or sentiment\n"
        "4. Related preferences or past experiences\n"
        "5. Background information that would provide context\n\n"
        "Respond with a JSON object containing search queries:\n"
        "```json\n"
        '{\n  "searchQueries": [\n'
        '    "specific search term or phrase",\n'
        '    "another relevant search query"\n'
        "  ]\n}\n"
        "```\n\n"
        "Generate 1-5 search queries. If no memories seem relevant, return an "
        "empty array.\n"
    )
    return "".join(parts)

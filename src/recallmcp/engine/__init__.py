"""Engine domain — retrieval, validation, conflicts, proposals and processing."""

from recallmcp.engine.conflicts import ConflictResolution
from recallmcp.engine.conflicts import ConflictResolver
from recallmcp.engine.conflicts import ConflictSeverity
from recallmcp.engine.conflicts import ConflictType
from recallmcp.engine.conflicts import DetectedConflict
from recallmcp.engine.conflicts import RecommendedAction
from recallmcp.engine.conflicts import ResolutionStrategy
from recallmcp.engine.context import format_memory_context
from recallmcp.engine.embedding import build_embedder
from recallmcp.engine.embedding import Embedder
from recallmcp.engine.embedding import HashingEmbedder
from recallmcp.engine.embedding import OpenAICompatibleEmbedder
from recallmcp.engine.llm_adapters import build_llm_adapter
from recallmcp.engine.llm_adapters import LLMAdapter
from recallmcp.engine.llm_adapters import NoopLLMAdapter
from recallmcp.engine.llm_adapters import OpenAICompatibleLLMAdapter
from recallmcp.engine.processor import OperationOutcome
from recallmcp.engine.processor import OperationProcessor
from recallmcp.engine.processor import OutcomeStatus
from recallmcp.engine.proposals import ProposalBatch
from recallmcp.engine.proposals import ProposalEngine
from recallmcp.engine.proposals import ProposalParser
from recallmcp.engine.retrieval import analyze_conversation_context
from recallmcp.engine.retrieval import ContextAnalysis
from recallmcp.engine.retrieval import RankedMemory
from recallmcp.engine.retrieval import RetrievalEngine
from recallmcp.engine.retrieval import should_trigger_retrieval
from recallmcp.engine.validator import EditValidator
from recallmcp.engine.validator import ValidationResult

__all__ = [
    "ConflictResolution",
    "ConflictResolver",
    "ConflictSeverity",
    "ConflictType",
    "ContextAnalysis",
    "DetectedConflict",
    "EditValidator",
    "Embedder",
    "HashingEmbedder",
    "LLMAdapter",
    "NoopLLMAdapter",
    "OpenAICompatibleEmbedder",
    "OpenAICompatibleLLMAdapter",
    "OperationOutcome",
    "OperationProcessor",
    "OutcomeStatus",
    "ProposalBatch",
    "ProposalEngine",
    "ProposalParser",
    "RankedMemory",
    "RecommendedAction",
    "ResolutionStrategy",
    "RetrievalEngine",
    "ValidationResult",
    "analyze_conversation_context",
    "build_embedder",
    "build_llm_adapter",
    "format_memory_context",
    "should_trigger_retrieval",
]

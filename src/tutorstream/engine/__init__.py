"""Engine domain — the turn pipeline and its components."""

from tutorstream.engine.citations import CitationCandidate
from tutorstream.engine.citations import merge_citations
from tutorstream.engine.directives import CardArgs
from tutorstream.engine.directives import Directive
from tutorstream.engine.directives import DirectiveKind
from tutorstream.engine.directives import DirectiveResolver
from tutorstream.engine.llm_adapters import build_stream_provider
from tutorstream.engine.llm_adapters import EchoStreamProvider
from tutorstream.engine.llm_adapters import OpenAICompatibleStreamProvider
from tutorstream.engine.orchestrator import StreamOrchestrator
from tutorstream.engine.provider import GenerationRequest
from tutorstream.engine.provider import LLMError
from tutorstream.engine.provider import ModelStreamProvider
from tutorstream.engine.provider import ProviderUsage
from tutorstream.engine.provider import StreamChunk
from tutorstream.engine.rate_limit import rate_key
from tutorstream.engine.rate_limit import RateGate
from tutorstream.engine.retrieval import ConceptCardLookup
from tutorstream.engine.retrieval import ConceptCardService
from tutorstream.engine.retrieval import ConceptCardTool
from tutorstream.engine.retrieval import Document
from tutorstream.engine.retrieval import KnowledgeBaseTool
from tutorstream.engine.retrieval import VectorSearch
from tutorstream.engine.retrieval import WikipediaClient
from tutorstream.engine.retrieval import WikipediaSearch
from tutorstream.engine.retrieval import WikipediaTool
from tutorstream.engine.usage import UsageEstimator

__all__ = [
    "CardArgs",
    "CitationCandidate",
    "ConceptCardLookup",
    "ConceptCardService",
    "ConceptCardTool",
    "Directive",
    "DirectiveKind",
    "DirectiveResolver",
    "Document",
    "EchoStreamProvider",
    "GenerationRequest",
    "KnowledgeBaseTool",
    "LLMError",
    "ModelStreamProvider",
    "OpenAICompatibleStreamProvider",
    "ProviderUsage",
    "RateGate",
    "StreamChunk",
    "StreamOrchestrator",
    "UsageEstimator",
    "VectorSearch",
    "WikipediaClient",
    "WikipediaSearch",
    "WikipediaTool",
    "build_stream_provider",
    "merge_citations",
    "rate_key",
]

from .base import CompletionResponse, CompletionService, EmbeddingService, Message, user_message
from .embeddings import (
    HashEmbeddingService,
    SentenceTransformerEmbeddingService,
    cosine_similarity,
    create_embedding_service,
)
from .errors import CompletionError, EmbeddingError, LLMError
from .json_enforcer import ParseError, ParseOk, extract_json, extract_text, parse_model, parse_model_list
from .stub import StubCompletionService
from .tokens import estimate_tokens

__all__ = [
    "CompletionResponse",
    "CompletionService",
    "EmbeddingService",
    "Message",
    "user_message",
    "HashEmbeddingService",
    "SentenceTransformerEmbeddingService",
    "cosine_similarity",
    "create_embedding_service",
    "CompletionError",
    "EmbeddingError",
    "LLMError",
    "ParseError",
    "ParseOk",
    "extract_json",
    "extract_text",
    "parse_model",
    "parse_model_list",
    "StubCompletionService",
    "estimate_tokens",
]

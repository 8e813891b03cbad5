"""
ChartRecall LLM Module

Model capability used by the core:
- OllamaClient: async HTTP client exposing complete(prompt, context)
- prompts: answer, encounter-summary and progressive-merge prompts
- ResponseParser: answer text, confidence and cited evidence labels
"""

from chartrecall.llm.ollama_client import OllamaClient
from chartrecall.llm.response_parser import ParsedResponse, ResponseParser

__all__ = [
    "OllamaClient",
    "ParsedResponse",
    "ResponseParser",
]

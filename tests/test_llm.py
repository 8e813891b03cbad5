"""
Tests for ChartRecall LLM integration

Tests for:
- OllamaClient: complete(prompt, context), retries, timeouts, health checks
- Prompt builders: answer, encounter summary and merge prompts
- ResponseParser: answer extraction, confidence, evidence labels
"""

import httpx
import pytest

from chartrecall.core.errors import UpstreamTimeout
from chartrecall.llm.ollama_client import OllamaClient, render_context
from chartrecall.llm.prompts import (
    SUMMARY_WORD_BUDGET,
    build_answer_prompt,
    build_encounter_prompt,
    build_merge_prompt,
)
from chartrecall.llm.response_parser import DEFAULT_CONFIDENCE, ResponseParser


def _mock_http(mocker, payload=None, post_side_effect=None):
    mock_response = mocker.Mock()
    mock_response.status_code = 200
    mock_response.json.return_value = payload or {"response": "answer"}
    mock_response.raise_for_status = mocker.Mock()

    mock_client = mocker.AsyncMock()
    if post_side_effect is not None:
        mock_client.post.side_effect = post_side_effect
    else:
        mock_client.post.return_value = mock_response
    mock_client.__aenter__ = mocker.AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = mocker.AsyncMock(return_value=False)

    mocker.patch("httpx.AsyncClient", return_value=mock_client)
    return mock_client


# ============================================
# OllamaClient Tests
# ============================================


class TestOllamaClientInit:
    """Tests for OllamaClient configuration."""

    @pytest.mark.unit
    def test_custom_configuration(self):
        client = OllamaClient(
            base_url="http://ollama:11434/",
            model="llama3",
            timeout=30,
            temperature=0.2,
            max_tokens=128,
        )
        assert client.base_url == "http://ollama:11434"
        assert client.model == "llama3"
        assert client.timeout == 30
        assert client.temperature == 0.2
        assert client.max_tokens == 128


class TestOllamaClientComplete:
    """Tests for complete() and generate()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_context_sections_follow_prompt(self, mocker):
        """Named context sections are rendered after the prompt."""
        mock_client = _mock_http(mocker, {"response": "Merged."})
        client = OllamaClient(base_url="http://fake:11434", model="qwen")

        result = await client.complete(
            "Fold the new content.",
            {"running summary": "Stable.", "new content": "BP 150/90."},
        )

        assert result == "Merged."
        payload = mock_client.post.call_args[1]["json"]
        assert payload["model"] == "qwen"
        assert payload["stream"] is False
        prompt = payload["prompt"]
        assert prompt.startswith("Fold the new content.")
        assert prompt.index("### RUNNING SUMMARY") < prompt.index("### NEW CONTENT")
        assert payload["options"]["num_predict"] == client.max_tokens

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_raises_upstream_timeout(self, mocker):
        """Timeouts are not retried here; the call boundary decides."""
        mock_client = _mock_http(mocker, post_side_effect=httpx.ReadTimeout("slow"))
        client = OllamaClient(base_url="http://fake:11434")

        with pytest.raises(UpstreamTimeout):
            await client.generate("prompt")
        assert mock_client.post.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_errors_retry_then_give_up(self, mocker):
        """Connection errors are retried and end in an empty string."""
        mocker.patch("chartrecall.llm.ollama_client.asyncio.sleep", mocker.AsyncMock())
        mock_client = _mock_http(mocker, post_side_effect=httpx.ConnectError("refused"))
        client = OllamaClient(base_url="http://fake:11434")

        assert await client.generate("prompt") == ""
        assert mock_client.post.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dropped_connection_is_retried(self, mocker):
        """Protocol errors retry like connection errors; a later success wins."""
        mocker.patch("chartrecall.llm.ollama_client.asyncio.sleep", mocker.AsyncMock())
        mock_client = _mock_http(mocker, {"response": "Recovered."})
        ok_response = mock_client.post.return_value
        mock_client.post.side_effect = [
            httpx.RemoteProtocolError("Server disconnected without sending a response."),
            httpx.ReadError("reset"),
            ok_response,
        ]
        client = OllamaClient(base_url="http://fake:11434")

        assert await client.generate("prompt") == "Recovered."
        assert mock_client.post.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_body_gives_empty_string(self, mocker):
        mocker.patch("chartrecall.llm.ollama_client.asyncio.sleep", mocker.AsyncMock())
        mock_client = _mock_http(mocker)
        mock_client.post.return_value.json.side_effect = ValueError("not json")
        client = OllamaClient(base_url="http://fake:11434")

        assert await client.generate("prompt") == ""

    @pytest.mark.unit
    def test_render_context(self):
        assert render_context(None) == ""
        rendered = render_context({"evidence": "  [Doc 1] note  ", "summary": ""})
        assert rendered == "### EVIDENCE\n[Doc 1] note\n\n### SUMMARY\n(none)"


class TestOllamaHealth:
    """Tests for health_check() and warmup()."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check_ok(self, mocker):
        mock_client = _mock_http(mocker)
        mock_client.get.return_value = mocker.Mock(status_code=200)
        assert await OllamaClient(base_url="http://fake:11434").health_check() is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check_unreachable(self, mocker):
        mock_client = _mock_http(mocker)
        mock_client.get.side_effect = httpx.ConnectError("refused")
        assert await OllamaClient(base_url="http://fake:11434").health_check() is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_warmup_requests_one_token(self, mocker):
        mock_client = _mock_http(mocker)
        assert await OllamaClient(base_url="http://fake:11434").warmup() is True
        payload = mock_client.post.call_args[1]["json"]
        assert payload["options"] == {"num_predict": 1}


# ============================================
# Prompt Tests
# ============================================


class TestPrompts:
    """Tests for prompt builders."""

    @pytest.mark.unit
    def test_answer_prompt_carries_question_and_strategy(self):
        prompt = build_answer_prompt("What procedure was done?", "hybrid")
        assert "What procedure was done?" in prompt
        assert "most recent first" in prompt
        assert "Confidence: X.XX" in prompt

    @pytest.mark.unit
    def test_answer_prompt_without_instructions(self):
        assert "INSTRUCTIONS" not in build_answer_prompt("q", "rdbms")

    @pytest.mark.unit
    def test_merge_prompt_focus(self):
        assert "related to: diabetes" in build_merge_prompt("Q1 2025", "diabetes")
        unfocused = build_merge_prompt("Q1 2025")
        assert "related to" not in unfocused
        assert f"at most {SUMMARY_WORD_BUDGET} words" in unfocused

    @pytest.mark.unit
    def test_encounter_prompt(self):
        prompt = build_encounter_prompt("inpatient", "2025-01-03", "2025-01-06")
        assert "inpatient from 2025-01-03 to 2025-01-06" in prompt


# ============================================
# ResponseParser Tests
# ============================================


class TestResponseParser:
    """Tests for ResponseParser."""

    @pytest.fixture
    def parser(self):
        return ResponseParser()

    @pytest.mark.unit
    def test_confidence_line_is_stripped(self, parser):
        parsed = parser.parse("Colonoscopy, no complications [Doc 1].\nConfidence: 0.85")
        assert parsed.answer == "Colonoscopy, no complications [Doc 1]."
        assert parsed.confidence == 0.85
        assert parsed.cited_labels == [1]

    @pytest.mark.unit
    def test_bold_confidence_is_clamped(self, parser):
        assert parser.parse("Answer.\n**Confidence:** 1.7").confidence == 1.0

    @pytest.mark.unit
    def test_missing_confidence_uses_fallback(self, parser):
        assert parser.parse("Answer.").confidence == DEFAULT_CONFIDENCE
        assert parser.parse("Answer.", fallback_confidence=0.3).confidence == 0.3

    @pytest.mark.unit
    def test_labels_in_first_cited_order(self, parser):
        parsed = parser.parse("A [Doc 3]. B [Doc 1, Doc 3]. C [Doc 2]")
        assert parsed.cited_labels == [3, 1, 2]

    @pytest.mark.unit
    def test_unbracketed_mentions_are_not_citations(self, parser):
        assert parser.parse("See Doc 2 for details.").cited_labels == []

    @pytest.mark.unit
    def test_empty_output(self, parser):
        parsed = parser.parse("")
        assert parsed.answer == ""
        assert parsed.confidence == 0.0

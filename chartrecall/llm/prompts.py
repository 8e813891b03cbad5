"""
Prompt Templates for ChartRecall

Prompts for the three points where the model is invoked:
- answer synthesis over resolved evidence
- encounter summary generation
- progressive merge (fold new content into a running summary)

Context blocks (evidence, running summary, new content) are passed to
complete() separately and rendered after the prompt.
"""

import os

# Word budget for a running summary; folding compresses to stay within it
SUMMARY_WORD_BUDGET = int(os.environ.get("SUMMARY_WORD_BUDGET", "250"))

ANSWER_PROMPT = """You are a clinical records assistant answering a question about ONE patient's record. Use ONLY the EVIDENCE below; every block belongs to this patient.

QUESTION:
{question}
{instructions}
RULES:
1. Answer only from the EVIDENCE blocks
2. Cite each fact with the block label, e.g. [Doc 1]
3. If the evidence does not answer the question, say so plainly
4. Do not add treatment recommendations that are not in the evidence
5. End with a line "Confidence: X.XX" (0.0-1.0)"""

_ANSWER_INSTRUCTIONS = {
    "semantic": "Focus on the passages most relevant to the question.",
    "hybrid": (
        "Evidence spans several encounters; keep facts attributed to the "
        "right date and present them most recent first."
    ),
}

ENCOUNTER_SUMMARY_PROMPT = """Summarize this closed clinical encounter for a clinician reviewing the patient's history.

ENCOUNTER: {encounter_type} from {start} to {end}

Include: reason for visit, key findings, procedures, diagnoses, medication changes, and follow-up plan. Omit anything not in the documents. Use at most {budget} words. No preamble."""

MERGE_PROMPT = """You maintain a running clinical summary for {period}. Fold the NEW CONTENT into the RUNNING SUMMARY.

- Keep chronological order; the new content is later than everything in the running summary
- Keep facts still clinically relevant; compress resolved or repeated items
- Never drop diagnoses, procedures or active medications
- Use at most {budget} words
{focus}
Return only the updated summary."""

FOCUS_PROMPT = """From the SUMMARY below, keep only the information related to: {condition}. If nothing relates, reply exactly "No relevant findings." Return only the filtered text."""

EMPTY_PERIOD_TEXT = "No closed encounters recorded in this period."


def build_answer_prompt(question: str, strategy: str) -> str:
    """Build the answer-synthesis prompt with strategy-specific instructions."""
    instructions = _ANSWER_INSTRUCTIONS.get(strategy, "")
    if instructions:
        instructions = f"\nINSTRUCTIONS:\n{instructions}\n"
    return ANSWER_PROMPT.format(question=question, instructions=instructions)


def build_merge_prompt(period: str, condition: str | None = None) -> str:
    focus = f"- Keep only information related to: {condition}\n" if condition else ""
    return MERGE_PROMPT.format(period=period, budget=SUMMARY_WORD_BUDGET, focus=focus)


def build_encounter_prompt(encounter_type: str, start: str, end: str) -> str:
    return ENCOUNTER_SUMMARY_PROMPT.format(
        encounter_type=encounter_type,
        start=start,
        end=end,
        budget=SUMMARY_WORD_BUDGET,
    )

"""
Batch grading prompts for remote scoring tiers.

Each question is a self-contained block closed by QUESTION_DELIMITER so
the model grades items independently and cannot carry an answer over
from one item to the next.
"""

from typing import List

from grade_router.config.constants import QUESTION_DELIMITER
from grade_router.core.models import GradingRequest


SYSTEM_PROMPT = (
    "You are a strict, fair exam grader. Grade each question independently "
    "against its reference answer. Never let one question influence another."
)

RETRY_RULES = """5. **Second pass**: a previous grading of these questions was rejected. Re-read
   each reference answer before scoring and do not guess.
6. **Complete output**: every question MUST have an entry with a numeric score
   and a confidence. Copy group_id and item_index exactly as given.
"""


# ═══════════════════════════════════════════════════════════════════════════════
# BATCH GRADING PROMPT
# ═══════════════════════════════════════════════════════════════════════════════

def _question_block(position: int, request: GradingRequest) -> str:
    lines = [
        f"## Question {position} (group_id={request.group_id}, item_index={request.item_index})",
        f"Max points: {request.max_points:g}",
    ]
    if request.subject:
        lines.append(f"Subject: {request.subject}")
    if request.skill_tags:
        lines.append(f"Skills: {', '.join(request.skill_tags)}")
    if request.question_text:
        lines.append(f"Question: {request.question_text}")
    if request.choices:
        lines.append(f"Choices: {' | '.join(request.choices)}")
    lines.append(f"Reference answer: {request.reference_answer or '(none provided)'}")
    lines.append(f"Student answer: {request.candidate_answer or '(blank)'}")
    return "\n".join(lines)


def build_batch_grading_prompt(requests: List[GradingRequest], strict: bool = False) -> str:
    """
    Build a prompt that grades every request of a batch.

    Args:
        requests: Batch items in order
        strict: Add the second-pass rules used when a batch is retried

    Returns:
        Complete prompt string
    """
    blocks = QUESTION_DELIMITER.join(
        _question_block(i + 1, request) for i, request in enumerate(requests)
    )
    retry_rules = RETRY_RULES if strict else ""

    return f"""Grade the following {len(requests)} question(s).

═══════════════════════════════════════════════════════════════════

{blocks}{QUESTION_DELIMITER}
═══════════════════════════════════════════════════════════════════

# RULES

1. **Independence**: grade each question only from its own block.
2. **Score**: between 0 and the question's max points.
3. **Confidence**: 0-100, how sure you are of the score.
4. **Order**: one result per question, in the order given.
{retry_rules}
# OUTPUT

Return ONLY this JSON:
```json
{{
  "results": [
    {{"group_id": "...", "item_index": 0, "score": 1.0, "is_correct": true, "confidence": 90, "reasoning": "..."}}
  ]
}}
```"""

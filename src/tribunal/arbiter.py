"""Judge model that scores a round's answers against weighted criteria."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import ARBITER_MODEL
from .errors import ArbiterResponseError
from .models import ContestResult, EventTag, Role, StreamRequest
from .prompts import (
    ARBITER_INVERSE_NOTE,
    ARBITER_RESPONSE_TEMPLATE,
    ARBITER_SYSTEM_PROMPT,
    ARBITER_USER_TEMPLATE,
)
from .providers import short_model_name
from .service import StreamService

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT = 10.0
INVERSE_CRITERIA = ("cost", "speed")
JUDGE_TEMPERATURE = 0.3
JUDGE_MAX_TOKENS = 4096


@dataclass(frozen=True)
class Evaluation:
    model_id: str
    criteria_scores: Dict[str, float]
    comment: str
    score: float


def weighted_score(criteria_scores: Dict[str, float], weights: Dict[str, float]) -> float:
    """Weighted mean of the criterion scores, one decimal. Unweighted criteria count 10."""
    total = 0.0
    weight_sum = 0.0
    for criterion, score in criteria_scores.items():
        weight = float(weights.get(criterion, DEFAULT_WEIGHT))
        total += float(score) * weight
        weight_sum += weight
    if weight_sum == 0:
        return 0.0
    return round(total / weight_sum, 1)


def extract_json(text: str) -> Dict[str, Any]:
    """Parse the first JSON object in a model answer, tolerating code fences."""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ArbiterResponseError("Judge answer contains no JSON object")
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        raise ArbiterResponseError(f"Judge answer is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ArbiterResponseError("Judge answer is not a JSON object")
    return payload


def _numeric_scores(raw: Any) -> Dict[str, float]:
    scores = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            try:
                scores[str(key)] = float(value)
            except (TypeError, ValueError):
                continue
    return scores


def match_evaluation(
    model_id: str, evaluations: List[Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    for evaluation in evaluations:
        if evaluation.get("model_id") == model_id:
            return evaluation
    short = short_model_name(model_id)
    for evaluation in evaluations:
        if short_model_name(str(evaluation.get("model_id", ""))) == short:
            return evaluation
    return None


def format_response_time(ms: Optional[int]) -> str:
    return f"{ms / 1000:.1f}s" if ms is not None else "n/a"


def build_judge_prompt(
    prompt: str, responses: List[ContestResult], criteria: List[str], weights: Dict[str, float]
) -> str:
    criteria_lines = "\n".join(
        f"- {c} (weight {weights.get(c, DEFAULT_WEIGHT):g})" for c in criteria
    )
    inverse = any(c.lower() in INVERSE_CRITERIA for c in criteria)
    blocks = "\n\n".join(
        ARBITER_RESPONSE_TEMPLATE.format(
            index=i + 1,
            model_id=r.model_id,
            response_time=format_response_time(r.response_time_ms),
            tokens=r.token_count if r.token_count is not None else "n/a",
            text=r.response_text or "",
        )
        for i, r in enumerate(responses)
    )
    return ARBITER_USER_TEMPLATE.format(
        prompt=prompt,
        criteria=criteria_lines,
        inverse_note=ARBITER_INVERSE_NOTE if inverse else "",
        responses=blocks,
        criteria_keys=", ".join(f'"{c}": <1-10>' for c in criteria),
    )


class Arbiter:
    def __init__(self, service: StreamService, user_id_default: str = "arbiter"):
        self.service = service
        self.user_id_default = user_id_default

    async def evaluate(
        self,
        prompt: str,
        responses: List[ContestResult],
        criteria: List[str],
        weights: Optional[Dict[str, float]] = None,
        judge_model: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Evaluation]:
        """
        Ask the judge model to score a batch of answers in one call.

        Args:
            prompt: The prompt the contestants answered
            responses: Ready results to judge
            criteria: Criterion ids to score, 1-10 each
            weights: Optional per-criterion weights (default 10)
            judge_model: Logical model id of the judge
            user_id: Whose credentials pay for the judge call

        Returns:
            One Evaluation per response the judge scored

        Raises:
            ArbiterResponseError: The judge call failed or its answer is unusable
        """
        weights = weights or {}
        judge_model = judge_model or ARBITER_MODEL
        request = StreamRequest(
            message=build_judge_prompt(prompt, responses, criteria, weights),
            model_id=judge_model,
            role=Role.ARBITER,
            system_prompt=ARBITER_SYSTEM_PROMPT,
            temperature=JUDGE_TEMPERATURE,
            max_tokens=JUDGE_MAX_TOKENS,
        )
        logger.info(f"Judging {len(responses)} responses with {judge_model}")
        text, _, terminal = await self.service.collect(request, user_id or self.user_id_default)
        if terminal is not None and terminal.tag is EventTag.ERROR:
            raise ArbiterResponseError(f"Judge call failed: {terminal.error.message}")
        if not text:
            raise ArbiterResponseError("Judge returned an empty answer")

        evaluations = extract_json(text).get("evaluations")
        if not isinstance(evaluations, list):
            raise ArbiterResponseError("Judge answer has no evaluations list")
        evaluations = [e for e in evaluations if isinstance(e, dict)]

        judged = []
        for response in responses:
            match = match_evaluation(response.model_id, evaluations)
            if match is None:
                logger.warning(f"Judge returned no evaluation for {response.model_id}")
                continue
            scores = _numeric_scores(match.get("criteria_scores"))
            judged.append(
                Evaluation(
                    model_id=response.model_id,
                    criteria_scores=scores,
                    comment=str(match.get("comment", "")),
                    score=weighted_score(scores, weights),
                )
            )
        return judged
